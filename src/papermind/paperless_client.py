"""Paperless-ngx REST API client."""

import logging

import httpx

logger = logging.getLogger("papermind.paperless")


class PaperlessApiError(Exception):
    """Non-2xx response from a Paperless instance."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class PaperlessClient:
    """Client for one Paperless-ngx instance, authenticated with an API token."""

    def __init__(self, base_url: str, token: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    @classmethod
    def for_instance(cls, instance, timeout: float = 30.0) -> "PaperlessClient":
        return cls(instance.api_url, instance.api_token, timeout=timeout)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Token {self.token}",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        url = f"{self.base_url}/api{endpoint}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=json,
            )
            if response.status_code >= 400:
                raise PaperlessApiError(
                    f"API request failed: {response.status_code} {response.reason_phrase}",
                    response.status_code,
                )
            return response.json()

    async def get_documents(self, page: int = 1, page_size: int = 100) -> dict:
        """Fetch one page of documents. Returns the raw paginated response."""
        return await self._request(
            "GET", "/documents/", params={"page": page, "page_size": page_size},
        )

    async def fetch_page(self, page: int, page_size: int) -> tuple[list[dict], bool]:
        """Fetch one page of documents as (results, has_next_page)."""
        data = await self.get_documents(page=page, page_size=page_size)
        return data.get("results", []), data.get("next") is not None

    async def get_document(self, document_id: int) -> dict:
        return await self._request("GET", f"/documents/{document_id}/")

    async def update_document(self, document_id: int, changes: dict) -> dict:
        """PATCH metadata fields (title, correspondent, document_type, tags, created)."""
        logger.debug("Updating document %d: %s", document_id, ", ".join(changes))
        return await self._request("PATCH", f"/documents/{document_id}/", json=changes)

    async def create_tag(self, name: str) -> dict:
        return await self._request("POST", "/tags/", json={"name": name})

    async def create_correspondent(self, name: str) -> dict:
        return await self._request("POST", "/correspondents/", json={"name": name})

    async def create_document_type(self, name: str) -> dict:
        return await self._request("POST", "/document_types/", json={"name": name})

    async def check_connection(self) -> bool:
        """Return True if the instance answers an authenticated request."""
        try:
            await self._request("GET", "/tags/", params={"page_size": 1})
            return True
        except (PaperlessApiError, httpx.HTTPError) as e:
            logger.debug("Connection check failed for %s: %s", self.base_url, e)
            return False
