"""papermind - scan Paperless-ngx instances and analyze new documents with AI."""

__version__ = "0.1.0"
