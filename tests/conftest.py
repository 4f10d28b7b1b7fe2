"""Shared test fixtures and fake splunklib objects."""

import io
import json
from typing import Any, Optional

import pytest
import pytest_asyncio

from splunk_client import ConnectionConfig, SplunkClient

VALID_PASSWORD = "changeme"
INVALID_TOKEN = "expired-token"


class FakeJob:
    """Stands in for splunklib.client.Job."""

    def __init__(
        self,
        sid: str = "1700000000.1",
        rows: Optional[list[dict[str, Any]]] = None,
        raw: Optional[dict[str, str]] = None,
        polls_until_done: int = 2,
        failed: bool = False
    ):
        self.sid = sid
        self.rows = rows or []
        self.raw = raw or {}
        self.polls_until_done = polls_until_done
        self.content = {"isFailed": "1" if failed else "0", "resultCount": str(len(self.rows))}
        if failed:
            self.content["messages"] = {"fatal": ["Error in 'search' command"]}
        self.is_done_calls = 0
        self.results_calls: list[dict[str, Any]] = []

    def is_done(self) -> bool:
        self.is_done_calls += 1
        return self.is_done_calls >= self.polls_until_done

    def results(self, **kwargs):
        self.results_calls.append(kwargs)
        output_mode = kwargs.get("output_mode", "xml")
        if output_mode == "json":
            body = json.dumps({
                "preview": False,
                "messages": [{"type": "INFO", "text": "Your timerange was substituted"}],
                "results": self.rows,
            })
            return io.BytesIO(body.encode("utf-8"))
        return io.BytesIO(self.raw[output_mode].encode("utf-8"))


class FakeJobs:
    def __init__(self, service: "FakeService"):
        self.service = service
        self.created: list[tuple[str, dict[str, Any]]] = []

    def create(self, query: str, **kwargs):
        self.service.calls.append("jobs.create")
        self.created.append((query, kwargs))
        return self.service.next_job


class FakeSavedSearch:
    def __init__(self, name: str, content: dict[str, Any], job: Optional[FakeJob] = None):
        self.name = name
        self.content = content
        self.job = job or FakeJob(sid="scheduler__admin__search__RMD5", rows=[{"source": "app1.log", "count": "25"}])
        self.dispatched: list[dict[str, Any]] = []

    def dispatch(self, **kwargs):
        self.dispatched.append(kwargs)
        return self.job


class FakeSavedSearches:
    def __init__(self, service: "FakeService", items: list[FakeSavedSearch]):
        self.service = service
        self.items = {item.name: item for item in items}

    def list(self):
        self.service.calls.append("saved_searches.list")
        return list(self.items.values())

    def __getitem__(self, name: str) -> FakeSavedSearch:
        self.service.calls.append("saved_searches.get")
        return self.items[name]


class FakeIndex:
    def __init__(self, name: str, content: dict[str, Any]):
        self.name = name
        self.content = content


class FakeIndexes:
    def __init__(self, service: "FakeService", items: list[FakeIndex]):
        self.service = service
        self.items = items

    def list(self):
        self.service.calls.append("indexes.list")
        return self.items


class FakeService:
    """Stands in for splunklib.client.Service."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.calls: list[str] = []
        self.logged_in = False
        self.next_job = FakeJob(rows=[
            {"_time": "2024-01-01T10:00:00", "host": "server1", "message": "Test log entry 1"},
            {"_time": "2024-01-01T10:01:00", "host": "server2", "message": "Test log entry 2"},
        ], raw={
            "csv": '"_time",host\n"2024-01-01T10:00:00",server1\n',
            "xml": '<?xml version="1.0"?>\n<results preview="0"><result offset="0"></result></results>\n',
        })
        self.jobs = FakeJobs(self)
        self.saved_searches = FakeSavedSearches(self, [
            FakeSavedSearch("Daily Error Report", {
                "search": "index=main level=ERROR | stats count by source",
                "description": "Daily error summary",
                "dispatch.earliest_time": "-24h",
                "dispatch.latest_time": "now",
                "cron_schedule": "0 6 * * *",
            }),
            FakeSavedSearch("Failed Logins", {
                "search": "index=security action=failure | stats count by user",
                "description": "",
                "dispatch.earliest_time": "-1h",
                "dispatch.latest_time": "now",
            }),
        ])
        self.indexes = FakeIndexes(self, [
            FakeIndex("main", {"totalEventCount": "1000000", "currentDBSizeMB": "1024", "maxDataSize": "auto", "maxTime": "x"}),
            FakeIndex("_internal", {"totalEventCount": "500000", "currentDBSizeMB": "512", "maxDataSize": "auto"}),
        ])

    def login(self):
        self.calls.append("login")
        if self.kwargs.get("password") != VALID_PASSWORD and not self.kwargs.get("splunkToken"):
            raise Exception("Login failed.")
        self.logged_in = True

    def get(self, path: str, **kwargs):
        self.calls.append(f"get {path}")
        if self.kwargs.get("splunkToken") == INVALID_TOKEN:
            raise Exception("HTTP 401 Unauthorized -- call not properly authenticated")
        return {"status": 200}

    @property
    def info(self):
        self.calls.append("info")
        return {
            "version": "9.1.2",
            "build": "b6b9c8185839",
            "serverName": "test-splunk",
            "licenseState": "OK",
            "mode": "normal",
            "os_name": "Linux",
        }


class ServiceFactory:
    """Records every service it builds so tests can inspect them."""

    def __init__(self):
        self.services: list[FakeService] = []

    def __call__(self, **kwargs) -> FakeService:
        service = FakeService(**kwargs)
        self.services.append(service)
        return service

    @property
    def last(self) -> FakeService:
        return self.services[-1]


@pytest.fixture
def service_factory() -> ServiceFactory:
    return ServiceFactory()


@pytest.fixture
def splunk(service_factory: ServiceFactory) -> SplunkClient:
    """An unconfigured client that builds fake services."""
    return SplunkClient(poll_interval=0, service_factory=service_factory)


@pytest.fixture
def valid_config() -> ConnectionConfig:
    return ConnectionConfig(host="splunk.example.com", username="admin", password=VALID_PASSWORD)


@pytest.fixture
def invalid_config() -> ConnectionConfig:
    return ConnectionConfig(host="splunk.example.com", username="admin", password="wrong")


@pytest_asyncio.fixture
async def connected(splunk: SplunkClient, valid_config: ConnectionConfig) -> SplunkClient:
    await splunk.configure(valid_config)
    return splunk
