from __future__ import annotations

import logging
import time
from urllib.parse import urlsplit, urlunsplit

from pymongo import MongoClient
from pymongo.errors import ConfigurationError, ConnectionFailure, OperationFailure

from bookctl.errors import ConnectivityError
from bookctl.facade import QueryFacade

DEFAULT_SERVER_TIMEOUT_MS = 5000

logger = logging.getLogger(__name__)


def redact_uri(uri: str) -> str:
    parts = urlsplit(uri)
    if "@" not in parts.netloc:
        return uri
    hosts = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, f"***@{hosts}", parts.path, parts.query, parts.fragment))


class MongoConnection:
    """Scoped driver handle bound to one database and collection."""

    def __init__(
        self,
        uri: str,
        database: str,
        collection: str,
        *,
        server_timeout_ms: int = DEFAULT_SERVER_TIMEOUT_MS,
    ) -> None:
        self.uri = uri
        self.database = database
        self.collection = collection
        logger.debug("Connecting to %s (%s.%s)", redact_uri(uri), database, collection)
        try:
            self._client = MongoClient(uri, serverSelectionTimeoutMS=server_timeout_ms)
        except ConfigurationError as exc:
            raise ConnectivityError(f"Invalid connection settings for {redact_uri(uri)}: {exc}") from exc

    def close(self) -> None:
        logger.debug("Closing connection to %s", redact_uri(self.uri))
        self._client.close()

    def __enter__(self) -> "MongoConnection":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def facade(self) -> QueryFacade:
        return QueryFacade(self._client[self.database][self.collection])

    def ping(self) -> float:
        """Round-trip a ``ping`` command and return the elapsed milliseconds."""
        started = time.perf_counter()
        try:
            self._client.admin.command("ping")
        except ConnectionFailure as exc:
            raise ConnectivityError(f"MongoDB unreachable at {redact_uri(self.uri)}: {exc}") from exc
        except OperationFailure as exc:
            raise ConnectivityError(f"MongoDB refused the ping at {redact_uri(self.uri)}: {exc}") from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug("Ping to %s took %.1f ms", redact_uri(self.uri), elapsed_ms)
        return elapsed_ms
