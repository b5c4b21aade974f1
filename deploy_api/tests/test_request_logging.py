"""Tests for the request-logging middleware and JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from httpx import AsyncClient

from deploy_api.middleware.json_formatter import JSONFormatter


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-42"})
        assert resp.headers["X-Correlation-ID"] == "corr-42"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_sensitive_headers_masked(self, client: AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="deploy_api.access"):
            await client.post(
                "/api/v1/provider/events",
                json={"attempt_id": "att-404", "stage": "running"},
                headers={"X-Provider-Token": "s3cret"},
            )

        records = [r for r in caplog.records if r.name == "deploy_api.access"]
        assert records
        request = records[-1].request
        assert request["headers"]["x-provider-token"] == "***"
        assert request["status_code"] == 404
        assert request["user_id"] == "u1"
        assert records[-1].levelno == logging.WARNING
        assert request["org_app"] is None

    @pytest.mark.asyncio
    async def test_org_app_routes_tagged(self, client: AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="deploy_api.access"):
            await client.get("/api/v1/orgs/org-1/apps/app-404")
            await client.get("/api/v1/orgs/org-1/members")

        tagged = [r.request["org_app"] for r in caplog.records if r.name == "deploy_api.access"]
        assert tagged[-2:] == ["org-1/app-404", "org-1"]


class TestJSONFormatter:
    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord("deploy_api.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self) -> None:
        payload = json.loads(JSONFormatter().format(self._record()))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "deploy_api.test"
        assert payload["message"] == "hello world"
        assert "timestamp" in payload

    def test_extra_keys_copied(self) -> None:
        payload = json.loads(JSONFormatter().format(self._record(org_app="org-1/app-1", attempt_id=3)))

        assert payload["org_app"] == "org-1/app-1"
        assert payload["attempt_id"] == 3
        assert "request" not in payload

    def test_exception_included(self) -> None:
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "deploy_api.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        payload = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad" in payload["exc_info"]
