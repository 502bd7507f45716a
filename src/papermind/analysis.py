"""AI analysis of mirrored documents against an OpenAI-compatible chat endpoint."""

import json
import logging
from dataclasses import asdict, dataclass, field

import httpx

from . import db
from .config import Config

logger = logging.getLogger("papermind.analysis")

ANALYSIS_INSTRUCTIONS = """\
Analyze the following document and suggest appropriate metadata.
{identity}
FIELD DEFINITIONS:
- suggestedTitle: A clear, descriptive title. Do NOT include the sender name.
- suggestedCorrespondent: The sender or organization. Include "id" if it is an
  existing correspondent, omit "id" to suggest a new one.
- suggestedDocumentType: The type of document, with or without "id" as above.
- suggestedTags: Relevant tags. Existing tags have "id", new tags only "name".
- suggestedDate: The document's primary date as YYYY-MM-DD, or null.

Document Title: {title}

Document Content:
{content}

Respond with a single JSON object:
{{
  "suggestedTitle": "...",
  "suggestedCorrespondent": {{"id": 123, "name": "..."}},
  "suggestedDocumentType": {{"name": "..."}},
  "suggestedTags": [{{"id": 1, "name": "..."}}, {{"name": "..."}}],
  "suggestedDate": "2024-01-15",
  "confidence": 0.85,
  "reasoning": "..."
}}"""


class AnalysisError(Exception):
    """Analysis could not produce a result."""


@dataclass
class SuggestedItem:
    """An existing repository item (id set) or a new one to create (name only)."""
    name: str
    id: int | None = None


@dataclass
class Suggestions:
    title: str | None = None
    correspondent: SuggestedItem | None = None
    document_type: SuggestedItem | None = None
    tags: list[SuggestedItem] = field(default_factory=list)
    date: str | None = None
    confidence: float | None = None
    reasoning: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisResponse:
    result: Suggestions | None
    input_tokens: int = 0
    output_tokens: int = 0


def _parse_item(value) -> SuggestedItem | None:
    if not isinstance(value, dict):
        return None
    name = str(value.get("name") or "").strip()
    item_id = value.get("id")
    if not isinstance(item_id, int) or isinstance(item_id, bool):
        item_id = None
    if not name and item_id is None:
        return None
    return SuggestedItem(name=name, id=item_id)


def parse_analysis_response(text: str) -> Suggestions:
    """Extract the JSON object from model output and map it to Suggestions."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise AnalysisError("No JSON object in model response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Invalid JSON in model response: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisError("Model response is not a JSON object")

    tags = []
    for raw_tag in data.get("suggestedTags") or []:
        tag = _parse_item(raw_tag)
        if tag is not None:
            tags.append(tag)

    confidence = data.get("confidence")
    return Suggestions(
        title=(data.get("suggestedTitle") or None),
        correspondent=_parse_item(data.get("suggestedCorrespondent")),
        document_type=_parse_item(data.get("suggestedDocumentType")),
        tags=tags,
        date=(data.get("suggestedDate") or None),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
        reasoning=str(data.get("reasoning") or ""),
    )


def build_prompt(title: str, content: str, max_chars: int, identity: str = "") -> str:
    if len(content) > max_chars:
        content = content[:max_chars] + "..."
    identity_line = ""
    if identity.strip():
        identity_line = (
            f'\nThe document owner is "{identity.strip()}". If this name is one of the '
            "parties, the other party is the correspondent.\n"
        )
    return ANALYSIS_INSTRUCTIONS.format(identity=identity_line, title=title, content=content)


async def analyze_document(
    config: Config,
    document_id: int,
    bot_id: int,
    owner_id: str = "",
) -> AnalysisResponse:
    """
    Analyze a local document with an AI bot and store the result.

    Raises AnalysisError when the document or bot is missing, the provider
    answers with an error status, or the output can't be parsed. Transport
    failures surface as httpx exceptions.
    """
    with db.get_db(config.db_path) as conn:
        document = db.get_document(conn, document_id)
        bot = db.get_ai_bot(conn, bot_id)

    if document is None:
        raise AnalysisError("Document not found")
    if bot is None:
        raise AnalysisError("AI bot not found")

    messages = []
    if bot.system_prompt:
        messages.append({"role": "system", "content": bot.system_prompt})
    messages.append({
        "role": "user",
        "content": build_prompt(
            document.title,
            document.content,
            config.analysis.max_content_chars,
            identity=owner_id,
        ),
    })

    url = f"{bot.api_url.rstrip('/')}/chat/completions"
    headers = {"Content-Type": "application/json"}
    if bot.api_key:
        headers["Authorization"] = f"Bearer {bot.api_key}"
    payload = {
        "model": bot.model,
        "messages": messages,
        "response_format": {"type": "json_object"},
    }

    logger.debug("Analyzing document %d with bot %s (%s)", document_id, bot.name, bot.model)
    async with httpx.AsyncClient(timeout=config.analysis.request_timeout) as client:
        response = await client.post(url, headers=headers, json=payload)
        if response.status_code >= 400:
            raise AnalysisError(
                f"AI provider returned {response.status_code}: {response.text[:200]}"
            )
        data = response.json()

    try:
        text = data["choices"][0]["message"]["content"] or ""
    except (KeyError, IndexError, TypeError) as e:
        raise AnalysisError("Unexpected AI provider response shape") from e

    usage = data.get("usage") or {}
    input_tokens = usage.get("prompt_tokens", 0)
    output_tokens = usage.get("completion_tokens", 0)

    suggestions = parse_analysis_response(text)

    with db.get_db(config.db_path) as conn:
        db.create_processing_result(
            conn,
            document_id=document.id,
            ai_bot_id=bot.id,
            result=suggestions.to_dict(),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            requested_by=owner_id or None,
        )

    logger.info(
        "Analyzed document %d (%d in / %d out tokens)",
        document_id, input_tokens, output_tokens,
    )
    return AnalysisResponse(
        result=suggestions, input_tokens=input_tokens, output_tokens=output_tokens,
    )
