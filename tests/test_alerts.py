"""Tests for the security alert engine."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.audit.alerts import AlertEngine, alert_type_for, build_alert, format_alert
from src.audit.store import MemoryLocalStore
from src.models.enums import AlertStatus, AlertType, RiskLevel
from src.schemas.audit import AuditEntry
from tests.fakes import BrokenStore, FakeSink

KEY = "lumi:security_alerts"


class _YieldingStore(MemoryLocalStore):
    """Hands control back to the loop after every read, like a network store."""

    async def items(self, key: str) -> list[str]:
        result = await super().items(key)
        await asyncio.sleep(0)
        return result


def _entry(**overrides: object) -> AuditEntry:
    data: dict[str, object] = {
        "action": "DATA_UPDATE",
        "resource_type": "children",
        "risk_level": RiskLevel.HIGH,
        "user_email": "educator@sunnyday.org",
    }
    data.update(overrides)
    return AuditEntry(**data)


class TestAlertRules:
    def test_failed_auth_first(self) -> None:
        entry = _entry(action="AUTH_FAILED_LOGIN", success=False, phi_accessed=True, risk_level=RiskLevel.CRITICAL)
        assert alert_type_for(entry) == AlertType.FAILED_AUTHENTICATION

    def test_phi_access(self) -> None:
        assert alert_type_for(_entry(phi_accessed=True)) == AlertType.PHI_ACCESS

    def test_data_export(self) -> None:
        assert alert_type_for(_entry(action="DATA_EXPORT")) == AlertType.DATA_EXPORT

    def test_critical_action(self) -> None:
        assert alert_type_for(_entry(risk_level=RiskLevel.CRITICAL)) == AlertType.CRITICAL_ACTION

    def test_fallback(self) -> None:
        assert alert_type_for(_entry()) == AlertType.SECURITY_EVENT

    def test_successful_auth_is_not_failed_auth(self) -> None:
        assert alert_type_for(_entry(action="AUTH_LOGIN")) == AlertType.SECURITY_EVENT


class TestBuildAlert:
    def test_fields(self) -> None:
        entry = _entry(user_id="u-1")
        alert = build_alert(entry)
        assert alert.audit_entry_id == entry.id
        assert alert.severity == RiskLevel.HIGH
        assert alert.status == AlertStatus.OPEN
        assert alert.description == "DATA_UPDATE on children"
        assert alert.details == {
            "audit_log_id": str(entry.id),
            "action": "DATA_UPDATE",
            "resource_type": "children",
            "success": True,
        }

    def test_format(self) -> None:
        message = format_alert(build_alert(_entry(risk_level=RiskLevel.CRITICAL)))
        assert "critical" in message
        assert "educator@sunnyday.org" in message


class TestAlertEngine:
    @pytest.mark.asyncio
    async def test_below_high_ignored(self) -> None:
        engine = AlertEngine(MemoryLocalStore(), KEY)
        assert await engine.on_entry(_entry(risk_level=RiskLevel.MEDIUM)) is None
        assert await engine.list_alerts() == []

    @pytest.mark.asyncio
    async def test_alert_stored_and_mirrored(self) -> None:
        sink = FakeSink()
        engine = AlertEngine(MemoryLocalStore(), KEY, sink=sink)
        alert = await engine.on_entry(_entry())

        assert [a.id for a in await engine.list_alerts()] == [alert.id]
        assert alert.id in sink.alerts
        assert await engine.open_count() == 1

    @pytest.mark.asyncio
    async def test_store_failure_swallowed(self) -> None:
        engine = AlertEngine(BrokenStore(), KEY)
        assert await engine.on_entry(_entry()) is None

    @pytest.mark.asyncio
    async def test_notifier_failure_swallowed(self) -> None:
        engine = AlertEngine(MemoryLocalStore(), KEY, recipients=["a@lumi.org", "b@lumi.org"])
        send = AsyncMock(side_effect=[ConnectionError("smtp down"), None])
        engine.set_send_fn(send)

        alert = await engine.on_entry(_entry())

        assert alert is not None
        assert send.await_count == 2

    @pytest.mark.asyncio
    async def test_close_alert(self) -> None:
        sink = FakeSink()
        engine = AlertEngine(MemoryLocalStore(), KEY, sink=sink)
        first = await engine.on_entry(_entry())
        second = await engine.on_entry(_entry(risk_level=RiskLevel.CRITICAL))

        closed = await engine.close_alert(first.id, closed_by="director", resolution="expected edit")

        assert closed.status == AlertStatus.CLOSED
        assert closed.closed_by == "director"
        assert closed.closed_at is not None
        assert sink.alerts[first.id].status == AlertStatus.CLOSED
        # Closing is a transition, nothing is removed
        assert len(await engine.list_alerts()) == 2
        assert [a.id for a in await engine.list_alerts(AlertStatus.OPEN)] == [second.id]

    @pytest.mark.asyncio
    async def test_close_twice_unchanged(self) -> None:
        engine = AlertEngine(MemoryLocalStore(), KEY)
        alert = await engine.on_entry(_entry())
        closed = await engine.close_alert(alert.id, closed_by="director", resolution="ok")
        again = await engine.close_alert(alert.id, closed_by="someone-else")
        assert again == closed

    @pytest.mark.asyncio
    async def test_close_while_new_alert_raised(self) -> None:
        store = _YieldingStore()
        engine = AlertEngine(store, KEY)
        first_entry, second_entry = _entry(), _entry(risk_level=RiskLevel.CRITICAL)
        first = await engine.on_entry(first_entry)

        closed, second = await asyncio.gather(
            engine.close_alert(first.id, closed_by="director"),
            engine.on_entry(second_entry),
        )

        alerts = {a.audit_entry_id: a for a in await engine.list_alerts()}
        assert set(alerts) == {first_entry.id, second_entry.id}
        assert alerts[first_entry.id].status == AlertStatus.CLOSED
        assert alerts[second_entry.id] == second
        assert alerts[second_entry.id].status == AlertStatus.OPEN
        assert closed.id == first.id

    @pytest.mark.asyncio
    async def test_close_retries_when_alert_changed(self) -> None:
        store = MemoryLocalStore()
        engine = AlertEngine(store, KEY)
        alert = await engine.on_entry(_entry())
        store.replace_item = AsyncMock(side_effect=[False, True])

        closed = await engine.close_alert(alert.id, closed_by="director")

        assert closed.status == AlertStatus.CLOSED
        assert store.replace_item.await_count == 2

    @pytest.mark.asyncio
    async def test_close_unknown(self) -> None:
        engine = AlertEngine(MemoryLocalStore(), KEY)
        assert await engine.close_alert(build_alert(_entry()).id, closed_by="director") is None
