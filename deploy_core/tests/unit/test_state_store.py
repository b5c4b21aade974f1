"""Tests for the compare-and-swap StateStore against a real SQLite file."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from deploy_core.errors import AlreadyInProgress, Conflict, NotFound
from deploy_core.lifecycle.state_machine import LifecycleAction, begin_attempt
from deploy_core.models.draft import DraftPreviewRecord, DraftStatus
from deploy_core.models.orgapp import OrgAppRecord, OrgAppStatus
from deploy_core.state.repository import OrgAppRepository
from deploy_core.state.store import StateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _add(store: StateStore, app_id: str = "app-1", **overrides: object) -> OrgAppRecord:
    values: dict[str, object] = {
        "org_id": "org-1",
        "app_id": app_id,
        "latest_version": "1",
        "access_member_ids": frozenset({"u1"}),
        "added_at": NOW,
    }
    values.update(overrides)
    return await store.insert(OrgAppRecord(**values))  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Basic CRUD
# ---------------------------------------------------------------------------


class TestOrgAppCrud:
    @pytest.mark.asyncio
    async def test_insert_and_get_round_trip(self, store: StateStore) -> None:
        inserted = await _add(store, access_member_ids=frozenset({"u1", "u2"}))
        assert inserted.version == 1

        loaded = await store.get("org-1", "app-1")
        assert loaded is not None
        assert loaded.status == OrgAppStatus.ADDED
        assert loaded.access_member_ids == frozenset({"u1", "u2"})
        assert loaded.added_at == NOW
        assert loaded.added_at.tzinfo is not None
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: StateStore) -> None:
        assert await store.get("org-1", "nope") is None
        with pytest.raises(NotFound):
            await store.require("org-1", "nope")

    @pytest.mark.asyncio
    async def test_duplicate_insert_conflicts(self, store: StateStore) -> None:
        await _add(store)
        with pytest.raises(Conflict):
            await _add(store)

    @pytest.mark.asyncio
    async def test_list_by_org(self, store: StateStore) -> None:
        await _add(store, "app-1")
        await _add(store, "app-2", added_at=NOW + timedelta(seconds=1))
        await store.insert(OrgAppRecord(org_id="org-2", app_id="app-1", latest_version="1"))
        records = await store.list_by_org("org-1")
        assert [r.app_id for r in records] == ["app-1", "app-2"]

    @pytest.mark.asyncio
    async def test_delete(self, store: StateStore) -> None:
        await _add(store)
        assert await store.delete("org-1", "app-1") is True
        assert await store.get("org-1", "app-1") is None
        assert await store.delete("org-1", "app-1") is False


# ---------------------------------------------------------------------------
# Compare-and-swap
# ---------------------------------------------------------------------------


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_upsert_bumps_version(self, store: StateStore) -> None:
        record = await _add(store)
        saved = await store.upsert(record.model_copy(update={"status_message": "hello"}))
        assert saved.version == 2
        loaded = await store.get("org-1", "app-1")
        assert loaded is not None
        assert loaded.status_message == "hello"
        assert loaded.version == 2

    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self, store: StateStore) -> None:
        record = await _add(store)
        await store.upsert(record.model_copy(update={"status_message": "first"}))
        with pytest.raises(Conflict):
            await store.upsert(record.model_copy(update={"status_message": "second"}))
        loaded = await store.get("org-1", "app-1")
        assert loaded is not None
        assert loaded.status_message == "first"

    @pytest.mark.asyncio
    async def test_concurrent_launch_has_one_winner(self, store: StateStore) -> None:
        """Two launches racing from the same read: one DEPLOYING, one loses the CAS."""
        await _add(store)

        async def launch() -> OrgAppRecord:
            return await store.mutate(
                "org-1", "app-1", lambda r: begin_attempt(r, LifecycleAction.LAUNCH, now=NOW)
            )

        results = await asyncio.gather(launch(), launch(), return_exceptions=True)
        winners = [r for r in results if isinstance(r, OrgAppRecord)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        # The loser re-reads the DEPLOYING record and is told it is in progress.
        assert isinstance(losers[0], AlreadyInProgress)
        loaded = await store.get("org-1", "app-1")
        assert loaded is not None
        assert loaded.status == OrgAppStatus.DEPLOYING
        assert loaded.attempt_id == 1

    @pytest.mark.asyncio
    async def test_mutate_retries_once_after_conflict(self, store: StateStore) -> None:
        record = await _add(store)
        calls = 0

        async def fn(current: OrgAppRecord) -> OrgAppRecord:
            nonlocal calls
            calls += 1
            if calls == 1:
                # Another writer sneaks in between our read and our write.
                await store.upsert(record.model_copy(update={"status_message": "intruder"}))
            return current.model_copy(update={"last_error": f"call {calls}"})

        result = await store.mutate("org-1", "app-1", fn)
        assert calls == 2
        assert result.last_error == "call 2"
        assert result.status_message == "intruder"

    @pytest.mark.asyncio
    async def test_mutate_none_leaves_record(self, store: StateStore) -> None:
        record = await _add(store)
        result = await store.mutate("org-1", "app-1", lambda r: None)
        assert result.version == record.version

    @pytest.mark.asyncio
    async def test_publish_propagation_invalidates_stale_reads(self, store: StateStore) -> None:
        record = await _add(store)
        async with store.session() as session:
            assert await OrgAppRepository(session).set_latest_version("app-1", "2") == 1
        with pytest.raises(Conflict):
            await store.upsert(record.model_copy(update={"status_message": "stale"}))
        loaded = await store.get("org-1", "app-1")
        assert loaded is not None
        assert loaded.latest_version == "2"


# ---------------------------------------------------------------------------
# Queries used by the watchdog and event handler
# ---------------------------------------------------------------------------


class TestLookups:
    @pytest.mark.asyncio
    async def test_list_stuck_deploying(self, store: StateStore) -> None:
        record = await _add(store)
        await store.upsert(begin_attempt(record, LifecycleAction.LAUNCH, now=NOW - timedelta(minutes=20)))
        fresh = await _add(store, "app-2")
        await store.upsert(begin_attempt(fresh, LifecycleAction.LAUNCH, now=NOW))

        stuck = await store.list_stuck_deploying(NOW - timedelta(minutes=10))
        assert [r.app_id for r in stuck] == ["app-1"]

    @pytest.mark.asyncio
    async def test_find_by_provider_attempt(self, store: StateStore) -> None:
        record = await _add(store)
        await store.upsert(record.model_copy(update={"provider_attempt_ref": "prov-42"}))
        found = await store.find_by_provider_attempt("prov-42")
        assert found is not None
        assert found.app_id == "app-1"
        assert await store.find_by_provider_attempt("prov-0") is None


# ---------------------------------------------------------------------------
# Hostname reservations
# ---------------------------------------------------------------------------


class TestHostnameReservations:
    @pytest.mark.asyncio
    async def test_reserve_is_idempotent_for_holder(self, store: StateStore) -> None:
        assert await store.reserve_hostname("acme", "org-1", "app-1") is True
        assert await store.reserve_hostname("acme", "org-1", "app-1") is True
        assert await store.reserve_hostname("acme", "org-1", "app-2") is False
        assert await store.hostname_holder("acme") == ("org-1", "app-1")

    @pytest.mark.asyncio
    async def test_concurrent_reserve_one_winner(self, store: StateStore) -> None:
        results = await asyncio.gather(
            store.reserve_hostname("shared", "org-1", "app-1"),
            store.reserve_hostname("shared", "org-2", "app-1"),
        )
        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, store: StateStore) -> None:
        await store.reserve_hostname("acme", "org-1", "app-1")
        assert await store.release_hostname("acme", "org-2", "app-1") is False
        assert await store.release_hostname("acme", "org-1", "app-1") is True
        assert await store.hostname_holder("acme") is None

    @pytest.mark.asyncio
    async def test_remove_releases_hostnames(self, store: StateStore) -> None:
        await _add(store, hostname="acme")
        await store.reserve_hostname("acme", "org-1", "app-1")

        removed = await store.remove("org-1", "app-1")

        assert removed is not None
        assert removed.hostname == "acme"
        assert await store.get("org-1", "app-1") is None
        assert await store.hostname_holder("acme") is None
        assert await store.remove("org-1", "app-1") is None


# ---------------------------------------------------------------------------
# Draft previews
# ---------------------------------------------------------------------------


class TestDraftStorage:
    def _draft(self, gen: str = "gen-1", **overrides: object) -> DraftPreviewRecord:
        values: dict[str, object] = {
            "generated_app_id": gen,
            "owner_user_id": "u1",
            "expires_at": NOW + timedelta(days=7),
            "created_at": NOW,
        }
        values.update(overrides)
        return DraftPreviewRecord(**values)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_claim_blocks_second_live_draft(self, store: StateStore) -> None:
        assert await store.claim_draft(self._draft(), NOW) is True
        assert await store.claim_draft(self._draft(owner_user_id="u2"), NOW) is False

    @pytest.mark.asyncio
    async def test_claim_replaces_failed_draft(self, store: StateStore) -> None:
        await store.claim_draft(self._draft(), NOW)
        await store.update_draft("gen-1", status=DraftStatus.FAILED, last_error="boom")
        assert await store.claim_draft(self._draft(owner_user_id="u2"), NOW) is True
        draft = await store.get_draft("gen-1")
        assert draft is not None
        assert draft.owner_user_id == "u2"
        assert draft.status == DraftStatus.DEPLOYING

    @pytest.mark.asyncio
    async def test_claim_replaces_expired_draft(self, store: StateStore) -> None:
        await store.claim_draft(self._draft(expires_at=NOW - timedelta(seconds=1)), NOW - timedelta(days=7))
        assert await store.claim_draft(self._draft(), NOW) is True

    @pytest.mark.asyncio
    async def test_update_guarded_by_attempt_ref(self, store: StateStore) -> None:
        await store.claim_draft(self._draft(), NOW)
        await store.update_draft("gen-1", provider_attempt_ref="prov-2")
        assert await store.update_draft("gen-1", expected_ref="prov-1", status=DraftStatus.READY) is False
        assert await store.update_draft("gen-1", expected_ref="prov-2", status=DraftStatus.READY) is True
        found = await store.find_draft_by_provider_attempt("prov-2")
        assert found is not None
        assert found.status == DraftStatus.READY

    @pytest.mark.asyncio
    async def test_list_expired_and_by_owner(self, store: StateStore) -> None:
        await store.claim_draft(self._draft("gen-old", expires_at=NOW - timedelta(hours=1)), NOW - timedelta(days=7))
        await store.claim_draft(self._draft("gen-new"), NOW)
        assert [d.generated_app_id for d in await store.list_expired_drafts(NOW)] == ["gen-old"]
        assert {d.generated_app_id for d in await store.list_drafts("u1")} == {"gen-old", "gen-new"}
        assert await store.delete_draft("gen-old") is True
        assert [d.generated_app_id for d in await store.list_drafts("u1")] == ["gen-new"]
