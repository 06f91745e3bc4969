"""Exception hierarchy shared by the sitekb services."""


class SitekbError(Exception):
    """Base class for all sitekb errors."""


class ConfigError(SitekbError):
    """Raised when required settings are missing or invalid."""


class SchemaError(SitekbError):
    """Raised when the persistent schema does not match what the store expects."""


class FetchError(SitekbError):
    """Raised when a page or sitemap could not be fetched."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class DataIntegrityError(SitekbError):
    """Raised when data would violate a storage invariant. Never retried."""


class EmbeddingDimensionError(DataIntegrityError):
    def __init__(self, expected: int, actual: int, table: str | None = None) -> None:
        where = f" for {table}" if table else ""
        super().__init__(f"embedding dimension mismatch{where}: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
        self.table = table


class DuplicateMainDomainError(SitekbError):
    """Raised when another client already owns the requested main domain."""

    code = "DUPLICATE_MAIN_DOMAIN"

    def __init__(self, main_domain: str) -> None:
        super().__init__(f"main domain already registered: {main_domain}")
        self.main_domain = main_domain


class ClientNotFoundError(SitekbError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"client not found: {client_id}")
        self.client_id = client_id


class UnsupportedDocumentError(SitekbError):
    """Raised for uploaded documents whose format cannot be extracted."""
