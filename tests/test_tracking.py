"""Сессия трекинга и разрешения по Telegram live location."""
import pytest

from services.errors import EndpointNotFound, NetworkError, PermissionDenied
from services.tracking import LiveLocationPermissions


class TestLiveLocationPermissions:
    async def test_nothing_shared(self, clock):
        perms = LiveLocationPermissions(grace_seconds=60, clock=clock)
        assert not await perms.request_foreground()
        assert not await perms.request_background()

    async def test_single_point_grants_foreground_only(self, clock):
        perms = LiveLocationPermissions(grace_seconds=60, clock=clock)
        perms.update(None)
        assert await perms.request_foreground()
        assert not await perms.request_background()
        clock.advance(61)
        assert not await perms.request_foreground()

    async def test_live_location_expires(self, clock):
        perms = LiveLocationPermissions(grace_seconds=60, clock=clock)
        perms.update(900, started_at=clock.now - 300)
        assert await perms.request_background()
        clock.advance(599)
        assert await perms.request_background()
        clock.advance(2)
        assert not await perms.request_background()

    async def test_revoke(self, clock):
        perms = LiveLocationPermissions(clock=clock)
        perms.update(900)
        perms.revoke()
        assert not await perms.request_background()
        assert await perms.request_foreground()


class TestLocationTrackingSession:
    async def test_start_and_stop(self, tracking):
        assert await tracking.start("42")
        assert tracking.active and tracking.order_id == "42"
        assert not await tracking.start("42")
        assert await tracking.stop()
        assert not tracking.active
        assert not await tracking.stop()

    async def test_single_session_per_rider(self, tracking):
        await tracking.start("1")
        await tracking.start("2")
        assert tracking.order_id == "2"

    async def test_stop_for_other_order_is_ignored(self, tracking):
        await tracking.start("1")
        assert not await tracking.stop("2")
        assert tracking.order_id == "1"

    @pytest.mark.parametrize("foreground,background,scope", [
        (False, True, "foreground"),
        (True, False, "background"),
    ])
    async def test_permission_denied(self, tracking, permissions, foreground, background, scope):
        permissions.foreground = foreground
        permissions.background = background
        with pytest.raises(PermissionDenied) as exc_info:
            await tracking.start("42")
        assert exc_info.value.scope == scope
        assert not tracking.active

    async def test_reading_without_session_is_dropped(self, tracking, api):
        assert not await tracking.push_reading(41.3, 69.2)
        assert api.calls == []

    async def test_small_moves_are_filtered(self, tracking, api, clock):
        await tracking.start("42")
        assert await tracking.push_reading(41.3, 69.2)
        clock.advance(5)
        # ~1 м
        assert not await tracking.push_reading(41.30001, 69.2)
        # ~111 м
        assert await tracking.push_reading(41.301, 69.2)
        assert len(api.called("report_location")) == 2

    async def test_heartbeat(self, tracking, api, clock):
        await tracking.start("42")
        await tracking.push_reading(41.3, 69.2)
        clock.advance(31)
        assert await tracking.push_reading(41.3, 69.2)
        assert tracking.reports_sent == 2

    async def test_report_failure_keeps_session(self, tracking, api):
        await tracking.start("42")
        api.fail_next["report_location"] = NetworkError("timeout")
        assert not await tracking.push_reading(41.3, 69.2)
        assert tracking.active
        assert isinstance(tracking.last_error, NetworkError)
        assert await tracking.push_reading(41.3, 69.2)
        assert tracking.last_error is None

    async def test_missing_endpoint_keeps_session(self, tracking, api):
        await tracking.start("42")
        api.fail_next["report_location"] = EndpointNotFound("/api/delivery/update-location/")
        assert not await tracking.push_reading(41.3, 69.2)
        assert tracking.active
        assert isinstance(tracking.last_error, EndpointNotFound)

    async def test_on_report_callback(self, tracking):
        seen = []
        tracking.on_report = lambda order_id, point: seen.append((order_id, point.lat))
        await tracking.start("42")
        await tracking.push_reading(41.3, 69.2)
        assert seen == [("42", 41.3)]
