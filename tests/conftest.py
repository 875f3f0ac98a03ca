"""Shared fixtures: settings helpers and an in-memory Grafana behind respx."""
from __future__ import annotations

import itertools
import json
from typing import Any

import httpx
import pytest
import respx

from grafana_provisioner.config import GrafanaConfig

BASE = "https://grafana.test"
API = f"{BASE}/api"


def make_settings(**kwargs: Any) -> GrafanaConfig:
    return GrafanaConfig(
        url=BASE,
        token=kwargs.get("token", "glsa_test_token"),
        timeout=5.0,
        retries=kwargs.get("retries", 3),
        retry_delay=kwargs.get("retry_delay", 0.5),
    )


class RecordingSleep:
    """Stand-in for asyncio.sleep that only records the requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


# ---------------------------------------------------------------------------
# In-memory Grafana
# ---------------------------------------------------------------------------


class FakeGrafana:
    """Just enough of the Grafana API for end-to-end provisioning runs."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.datasources: list[dict[str, Any]] = []
        self.folders: list[dict[str, Any]] = []
        self.dashboards: list[dict[str, Any]] = []
        self.import_requests: list[dict[str, Any]] = []
        self.healthy = True

    def _next(self, prefix: str) -> tuple[int, str]:
        n = next(self._ids)
        return n, f"{prefix}{n:04d}"

    def add_datasource(self, name: str, url: str, database: str, type_: str = "grafana-postgresql-datasource") -> dict[str, Any]:
        id_, uid = self._next("ds")
        record = {
            "id": id_,
            "uid": uid,
            "name": name,
            "type": type_,
            "url": url,
            "database": database,
            "isDefault": False,
            "access": "proxy",
        }
        self.datasources.append(record)
        return record

    def add_folder(self, title: str) -> dict[str, Any]:
        id_, uid = self._next("fo")
        folder = {"id": id_, "uid": uid, "title": title, "url": f"/dashboards/f/{uid}"}
        self.folders.append(folder)
        return folder

    # -- handlers ----------------------------------------------------------

    def _health(self, request: httpx.Request) -> httpx.Response:
        if self.healthy:
            return httpx.Response(200, json={"database": "ok"})
        return httpx.Response(503, json={"database": "failing"})

    def _list_datasources(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=self.datasources)

    def _create_datasource(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if any(d["name"] == body["name"] for d in self.datasources):
            return httpx.Response(409, json={"message": "data source with the same name already exists"})
        record = self.add_datasource(body["name"], body["url"], body["database"], body["type"])
        return httpx.Response(
            200,
            json={"datasource": {"id": record["id"], "uid": record["uid"], "name": record["name"]}, "message": "Datasource added"},
        )

    def _list_folders(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=self.folders)

    def _create_folder(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if any(f["title"] == body["title"] for f in self.folders):
            return httpx.Response(409, json={"message": "a folder with the same name already exists"})
        return httpx.Response(200, json=self.add_folder(body["title"]))

    def _search(self, request: httpx.Request) -> httpx.Response:
        hits = [
            {"id": f["id"], "uid": f["uid"], "title": f["title"], "type": "dash-folder"}
            for f in self.folders
        ]
        hits.extend(self.dashboards)
        return httpx.Response(200, json=hits)

    def _import(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.import_requests.append(body)
        dashboard = body["dashboard"]
        folder = next((f for f in self.folders if f["uid"] == body.get("folderUid")), None)
        existing = next((d for d in self.dashboards if dashboard.get("uid") and d["uid"] == dashboard["uid"]), None)
        if existing is None:
            id_, uid = self._next("db")
            existing = {"id": id_, "uid": uid, "type": "dash-db"}
            self.dashboards.append(existing)
        existing.update(
            title=dashboard["title"],
            folderUid=folder["uid"] if folder else "",
            folderTitle=folder["title"] if folder else "",
        )
        return httpx.Response(200, json={"uid": existing["uid"], "imported": True})

    def install(self, router: respx.MockRouter) -> None:
        router.get(f"{API}/health").mock(side_effect=self._health)
        router.get(f"{API}/datasources").mock(side_effect=self._list_datasources)
        router.post(f"{API}/datasources").mock(side_effect=self._create_datasource)
        router.get(f"{API}/folders").mock(side_effect=self._list_folders)
        router.post(f"{API}/folders").mock(side_effect=self._create_folder)
        router.get(f"{API}/search").mock(side_effect=self._search)
        router.post(f"{API}/dashboards/import").mock(side_effect=self._import)


@pytest.fixture
def grafana() -> Any:
    fake = FakeGrafana()
    with respx.mock(assert_all_called=False) as router:
        fake.install(router)
        yield fake
