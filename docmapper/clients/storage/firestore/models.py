from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FirestoreConnectionOptions(BaseModel):
    """
    Connection target of the cloud document database. Passed to ``connect`` instead of a url.

    Attributes:
        project_id (str): Google Cloud project id (``projectId`` is accepted as well).
        database (str | None): Database id. Defaults to STORAGE_FIRESTORE_DATABASE or "(default)".
        base_url (str | None): REST root, e.g. "https://firestore.googleapis.com/v1".
        emulator_host (str | None): "host:port" of a local emulator. Overrides base_url.
        access_token (str | None): OAuth2 bearer token.
        timeout (float | None): Request timeout in seconds.
        transport (httpx.AsyncBaseTransport | None): Custom transport for the HTTP client.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="ignore")

    project_id: str = Field(validation_alias=AliasChoices("project_id", "projectId"))
    database: str | None = None
    base_url: str | None = None
    emulator_host: str | None = None
    access_token: str | None = None
    timeout: float | None = None
    transport: httpx.AsyncBaseTransport | None = None


class WhereClause(BaseModel):
    """A single native filter: ``field op value``, with ops written as "==", "<", "array-contains", ..."""

    field: str
    op: str
    value: Any = None


class ConvertedQuery(BaseModel):
    """
    A structured query decomposed into what Firestore can execute.

    Attributes:
        ids (list | None): Document ids to fetch by point look-up, or None when the query does not target ids.
        queries (list[list[WhereClause]]): Independent native queries (each an AND of clauses) whose results are unioned.
        post_filter (dict | None): Query applied in-process to the fetched records.
    """

    ids: list[Any] | None = None
    queries: list[list[WhereClause]] = Field(default_factory=list)
    post_filter: dict[str, Any] | None = None
