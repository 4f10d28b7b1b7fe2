"""
Splunk client

Owns the authenticated Splunk session used by the MCP server and exposes
awaitable wrappers around the blocking splunklib calls.
"""

import os
import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog
import splunklib.client as client
import splunklib.results as results

logger = structlog.get_logger(__name__)

DEFAULT_PORT = 8089
DEFAULT_SCHEME = "https"
DEFAULT_POLL_INTERVAL = 0.5

# Queries starting with one of these already carry a leading command
LEADING_COMMANDS = ("search", "|", "from", "tstats", "inputlookup")

NOT_CONFIGURED_MESSAGE = "Splunk service not initialized. Please configure connection first."


class SplunkMCPError(Exception):
    """Base class for errors raised by the Splunk client."""


class SplunkNotConfiguredError(SplunkMCPError):
    """Raised when an operation needs a session and none is configured."""

    def __init__(self, message: str = NOT_CONFIGURED_MESSAGE):
        super().__init__(message)


class SplunkConnectionError(SplunkMCPError):
    """Raised when connecting or authenticating to Splunk fails."""


class SavedSearchNotFoundError(SplunkMCPError):
    """Raised when a saved search name does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Saved search '{name}' not found")


class SearchJobError(SplunkMCPError):
    """Raised when a search job finishes in a failed state."""


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ConnectionConfig:
    """Parameters needed to open a Splunk session."""

    host: str
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: str = DEFAULT_SCHEME
    token: Optional[str] = None
    verify: bool = False

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def service_kwargs(self) -> dict[str, Any]:
        """
        Build the keyword arguments for splunklib.client.Service.

        Token authentication wins over username/password when both are set.
        """
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "scheme": self.scheme,
            "verify": self.verify,
        }
        if self.token:
            kwargs["splunkToken"] = self.token
        else:
            kwargs["username"] = self.username
            kwargs["password"] = self.password
        return kwargs


@dataclass
class SplunkSettings:
    """
    Process-level settings read from the environment.

    The SPLUNK_* connection variables are optional; when they are complete the
    server configures its session at startup.
    """

    host: Optional[str] = None
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    scheme: str = DEFAULT_SCHEME
    verify_ssl: bool = False
    poll_interval: float = DEFAULT_POLL_INTERVAL
    log_level: str = "info"
    log_format: str = "console"

    @classmethod
    def from_env(cls) -> "SplunkSettings":
        return cls(
            host=os.getenv("SPLUNK_HOST"),
            port=int(os.getenv("SPLUNK_PORT", str(DEFAULT_PORT))),
            username=os.getenv("SPLUNK_USERNAME"),
            password=os.getenv("SPLUNK_PASSWORD"),
            token=os.getenv("SPLUNK_TOKEN"),
            scheme=os.getenv("SPLUNK_SCHEME", DEFAULT_SCHEME),
            verify_ssl=_env_flag("SPLUNK_VERIFY_SSL"),
            poll_interval=float(os.getenv("SPLUNK_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL))),
            log_level=os.getenv("SPLUNK_MCP_LOG_LEVEL", "info"),
            log_format=os.getenv("SPLUNK_MCP_LOG_FORMAT", "console"),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.host) and bool(self.token or (self.username and self.password))

    def connection_config(self) -> ConnectionConfig:
        """Return the environment connection parameters, or raise ValueError if incomplete."""
        if not self.has_credentials:
            raise ValueError(
                "Splunk credentials not configured. Set SPLUNK_HOST and SPLUNK_TOKEN or "
                "SPLUNK_USERNAME and SPLUNK_PASSWORD environment variables."
            )
        return ConnectionConfig(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            scheme=self.scheme,
            token=self.token,
            verify=self.verify_ssl,
        )


@dataclass
class SearchRequest:
    """A one-shot search as submitted by the search tool."""

    query: str
    earliest_time: Optional[str] = None
    latest_time: Optional[str] = None
    max_count: int = 100
    output_mode: str = "json"


def normalize_query(query: str) -> str:
    """Prefix the query with 'search' unless it already starts with a leading command."""
    if not query.strip().startswith(LEADING_COMMANDS):
        return f"search {query}"
    return query


def _time_bounds(earliest_time: Optional[str], latest_time: Optional[str], prefix: str = "") -> dict[str, str]:
    bounds = {}
    if earliest_time:
        bounds[f"{prefix}earliest_time"] = earliest_time
    if latest_time:
        bounds[f"{prefix}latest_time"] = latest_time
    return bounds


def _read_json_rows(stream) -> list[dict[str, Any]]:
    reader = results.JSONResultsReader(stream)
    return [row for row in reader if isinstance(row, dict)]


def _read_raw(stream) -> str:
    return stream.read().decode("utf-8")


class SplunkClient:
    """
    Holds at most one authenticated Splunk session.

    splunklib is synchronous, so every SDK call is pushed to a worker thread
    and awaited. Job completion is awaited by polling ``job.is_done()``.
    """

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL, service_factory=client.Service):
        self.poll_interval = poll_interval
        self._service_factory = service_factory
        self._service: Optional[client.Service] = None

    @property
    def is_connected(self) -> bool:
        return self._service is not None

    def _require_service(self) -> client.Service:
        if self._service is None:
            raise SplunkNotConfiguredError()
        return self._service

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def configure(self, config: ConnectionConfig) -> None:
        """
        Open a new session, replacing any existing one.

        Args:
            config: Connection parameters for the Splunk management port

        Raises:
            SplunkConnectionError: if the service cannot be created, login fails or
                the credentials are rejected by the server.
                The session is left unset in that case.
        """
        self._service = None
        logger.info("splunk_configure_started", url=config.url, username=config.username)
        try:
            service = self._service_factory(**config.service_kwargs())
            await self._call(service.login)
            # login() is a no-op for token auth, so make one authenticated request
            await self._call(service.get, "authentication/current-context")
        except Exception as e:
            logger.warning("splunk_configure_failed", url=config.url, error=str(e))
            raise SplunkConnectionError(f"Failed to connect to Splunk: {e}") from e

        self._service = service
        logger.info("splunk_configure_succeeded", url=config.url)

    async def _wait_for_job(self, job) -> None:
        while not await self._call(job.is_done):
            await asyncio.sleep(self.poll_interval)
        if job.content.get("isFailed") in ("1", True):
            messages = job.content.get("messages")
            raise SearchJobError(f"Search job {job.sid} failed: {messages or 'unknown error'}")
        logger.debug("splunk_job_done", sid=job.sid, result_count=job.content.get("resultCount"))

    async def search(self, request: SearchRequest) -> Union[str, list[dict[str, Any]]]:
        """
        Run a one-shot search and return its results.

        Args:
            request: Query, time bounds, result cap and output mode

        Returns:
            A list of result rows for json output, or the raw response body for csv and xml
        """
        service = self._require_service()
        query = normalize_query(request.query)

        job_kwargs: dict[str, Any] = {"max_count": request.max_count}
        job_kwargs.update(_time_bounds(request.earliest_time, request.latest_time))

        job = await self._call(service.jobs.create, query, **job_kwargs)
        logger.info("splunk_search_submitted", sid=job.sid, output_mode=request.output_mode)
        await self._wait_for_job(job)

        stream = await self._call(job.results, output_mode=request.output_mode, count=request.max_count)
        if request.output_mode == "json":
            return await self._call(_read_json_rows, stream)
        return await self._call(_read_raw, stream)

    async def list_saved_searches(self) -> list[dict[str, Any]]:
        """Fetch every saved search, projected to name, search text, description and dispatch window."""
        service = self._require_service()

        def fetch():
            return [
                {
                    "name": saved_search.name,
                    "search": saved_search.content.get("search"),
                    "description": saved_search.content.get("description"),
                    "earliest_time": saved_search.content.get("dispatch.earliest_time"),
                    "latest_time": saved_search.content.get("dispatch.latest_time"),
                }
                for saved_search in service.saved_searches.list()
            ]

        return await self._call(fetch)

    async def run_saved_search(
        self,
        name: str,
        earliest_time: Optional[str] = None,
        latest_time: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """
        Dispatch a saved search by name and return its JSON results.

        Args:
            name: Name of the saved search
            earliest_time: Override for the saved search's dispatch.earliest_time
            latest_time: Override for the saved search's dispatch.latest_time

        Raises:
            SavedSearchNotFoundError: if no saved search has that name. Nothing is dispatched.
        """
        service = self._require_service()

        def lookup():
            try:
                return service.saved_searches[name]
            except KeyError:
                return None

        saved_search = await self._call(lookup)
        if saved_search is None:
            logger.info("splunk_saved_search_not_found", name=name)
            raise SavedSearchNotFoundError(name)

        dispatch_kwargs = _time_bounds(earliest_time, latest_time, prefix="dispatch.")
        job = await self._call(saved_search.dispatch, **dispatch_kwargs)
        logger.info("splunk_saved_search_dispatched", name=name, sid=job.sid)
        await self._wait_for_job(job)

        stream = await self._call(job.results, output_mode="json")
        return await self._call(_read_json_rows, stream)

    async def list_indexes(self) -> list[dict[str, Any]]:
        """Fetch every index with its event count and size."""
        service = self._require_service()

        def fetch():
            return [
                {
                    "name": index.name,
                    "totalEventCount": index.content.get("totalEventCount"),
                    "currentDBSizeMB": index.content.get("currentDBSizeMB"),
                    "maxDataSize": index.content.get("maxDataSize"),
                }
                for index in service.indexes.list()
            ]

        return await self._call(fetch)

    async def get_server_info(self) -> dict[str, Any]:
        service = self._require_service()
        info = await self._call(lambda: service.info)
        return {
            "version": info.get("version"),
            "build": info.get("build"),
            "serverName": info.get("serverName"),
            "licenseState": info.get("licenseState"),
            "mode": info.get("mode"),
        }
