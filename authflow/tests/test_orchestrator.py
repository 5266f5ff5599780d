"""
Tests for the popup flow orchestrator, its message channel and middlewares.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch
from urllib.parse import urlencode

import pytest

from authflow.errors import AuthenticationError, AuthFlowError
from authflow.flow.backend import ServiceBackend
from authflow.flow.channel import BrowserPopup, ChannelMessage, MessageChannel
from authflow.flow.middleware import AnalyticsMiddleware, FlowMiddleware
from authflow.flow.orchestrator import FlowOrchestrator, FlowState, describe_error
from authflow.models import AuthResponseMessage
from authflow.tests.fakes import make_settings


ORIGIN = "http://testserver"


class FakePopup:
    def __init__(self):
        self.url = None
        self.closed = False

    def open(self, url):
        self.url = url

    def close(self):
        self.closed = True


class RecordingMiddleware(FlowMiddleware):
    def __init__(self, name, events):
        self.name = name
        self.events = events

    def before(self, operation, context):
        self.events.append((self.name, "before", operation))

    def after(self, operation, context, result):
        self.events.append((self.name, "after", operation))

    def on_error(self, operation, context, exc):
        self.events.append((self.name, "on_error", operation))


class BlockingBackend:
    """Holds code exchange until ``release`` is set."""

    def __init__(self, backend):
        self._backend = backend
        self.exchange_started = asyncio.Event()
        self.release = asyncio.Event()

    async def begin_authorization(self, scope=None):
        return await self._backend.begin_authorization(scope)

    async def complete_authorization(self, code, state):
        self.exchange_started.set()
        await self.release.wait()
        return await self._backend.complete_authorization(code, state)


class BrokenMiddleware(FlowMiddleware):
    name = "broken"

    def before(self, operation, context):
        raise RuntimeError("hook failure")


@pytest.fixture
def popups():
    return []


@pytest.fixture
def callbacks():
    return {"success": Mock(), "error": Mock()}


@pytest.fixture
def orchestrator(service, popups, callbacks):
    def popup_factory():
        popup = FakePopup()
        popups.append(popup)
        return popup

    return FlowOrchestrator(
        ServiceBackend(service),
        popup_factory,
        poll_interval=0.01,
        expected_origin=ORIGIN,
        flow_timeout=5.0,
        on_success=callbacks["success"],
        on_error=callbacks["error"],
    )


async def _opened(popups):
    for _ in range(200):
        if popups and popups[-1].url:
            return popups[-1]
        await asyncio.sleep(0.01)
    raise AssertionError("authentication window was never opened")


def _success(query):
    return AuthResponseMessage(status="success", query=urlencode(query))


class TestPopupFlow:
    """Complete popup logins"""

    @pytest.mark.asyncio
    async def test_successful_flow(self, orchestrator, popups, provider, service, callbacks):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        assert orchestrator.state is FlowState.AWAITING_PROVIDER

        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        result = await task

        assert result.user.sub == "user-123"
        assert orchestrator.result == result
        assert orchestrator.state is FlowState.SUCCESS
        assert popup.closed
        assert await service.is_authenticated() is True
        callbacks["success"].assert_called_once_with(result)
        callbacks["error"].assert_not_called()

    @pytest.mark.asyncio
    async def test_popup_closed_by_user(self, orchestrator, popups, service, callbacks):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)

        popup.close()
        result = await task

        assert result is None
        assert orchestrator.state is FlowState.CANCELLED
        assert orchestrator.last_error.error == "popup_closed"
        assert await service.is_authenticated() is False
        callbacks["error"].assert_called_once_with(orchestrator.last_error)
        callbacks["success"].assert_not_called()

    @pytest.mark.asyncio
    async def test_message_queued_before_close_is_used(self, orchestrator, popups, provider):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)

        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        popup.close()
        result = await task

        assert result is not None
        assert orchestrator.state is FlowState.SUCCESS

    @pytest.mark.asyncio
    async def test_provider_error(self, orchestrator, popups, provider, callbacks):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)

        orchestrator.channel.post(
            AuthResponseMessage(
                status="error",
                query="error=access_denied&error_description=User+denied+access",
                error="access_denied",
                error_description="User denied access",
            ),
            ORIGIN,
        )
        result = await task

        assert result is None
        assert orchestrator.state is FlowState.ERROR
        assert orchestrator.last_error.error == "access_denied"
        assert orchestrator.last_error.message == "User denied access"
        assert popup.closed
        assert provider.requests_to("/token") == []
        callbacks["error"].assert_called_once()

    @pytest.mark.asyncio
    async def test_responses_of_other_attempts_are_ignored(self, orchestrator, popups, provider):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        callback = provider.authorize(popup.url)

        orchestrator.channel.post(_success({"code": callback["code"], "state": "forged"}), ORIGIN)
        orchestrator.channel.post(_success(callback), ORIGIN)
        result = await task

        assert result is not None
        assert orchestrator.state is FlowState.SUCCESS
        assert len(provider.requests_to("/token")) == 1

    @pytest.mark.asyncio
    async def test_foreign_state_never_completes_the_flow(self, orchestrator, popups, provider, service):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        callback = provider.authorize(popup.url)

        orchestrator.channel.post(_success({"code": callback["code"], "state": "forged"}), ORIGIN)
        popup.close()
        await task

        assert orchestrator.state is FlowState.CANCELLED
        assert orchestrator.last_error.error == "popup_closed"
        assert provider.requests_to("/token") == []
        assert await service.is_authenticated() is False

    @pytest.mark.asyncio
    async def test_messages_from_other_origins_are_ignored(self, orchestrator, popups, provider):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        callback = provider.authorize(popup.url)

        orchestrator.channel.post(_success({"code": "stolen", "state": callback["state"]}), "https://evil.example")
        orchestrator.channel.post({"type": "unrelated"}, ORIGIN)
        orchestrator.channel.post(_success(callback), ORIGIN)
        result = await task

        assert result is not None
        assert orchestrator.state is FlowState.SUCCESS

    @pytest.mark.asyncio
    async def test_exchange_failure(self, orchestrator, popups, provider, callbacks):
        provider.token_error = {"error": "invalid_grant", "error_description": "Code expired"}
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)

        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        result = await task

        assert result is None
        assert orchestrator.state is FlowState.ERROR
        assert orchestrator.last_error.error == "token_exchange_error"
        callbacks["error"].assert_called_once()
        callbacks["success"].assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel(self, orchestrator, popups, callbacks):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)

        orchestrator.cancel()
        orchestrator.cancel()
        result = await task

        assert result is None
        assert orchestrator.state is FlowState.CANCELLED
        assert orchestrator.last_error.error == "cancelled"
        assert popup.closed
        callbacks["error"].assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_during_exchange_discards_result(self, service, popups, provider, callbacks):
        backend = BlockingBackend(ServiceBackend(service))
        popup = FakePopup()
        popups.append(popup)
        orchestrator = FlowOrchestrator(
            backend,
            lambda: popup,
            poll_interval=0.01,
            expected_origin=ORIGIN,
            on_success=callbacks["success"],
            on_error=callbacks["error"],
        )

        task = asyncio.create_task(orchestrator.start_auth_flow())
        await _opened(popups)
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        await asyncio.wait_for(backend.exchange_started.wait(), 5.0)

        orchestrator.cancel()
        backend.release.set()
        result = await task

        assert result is None
        assert orchestrator.result is None
        assert orchestrator.state is FlowState.CANCELLED
        callbacks["success"].assert_not_called()
        callbacks["error"].assert_called_once()
        assert callbacks["error"].call_args.args[0].error == "cancelled"

    @pytest.mark.asyncio
    async def test_second_flow_while_in_progress(self, orchestrator, popups):
        task = asyncio.create_task(orchestrator.start_auth_flow())
        await _opened(popups)

        with pytest.raises(AuthFlowError) as exc_info:
            await orchestrator.start_auth_flow()
        assert exc_info.value.error == "flow_in_progress"

        orchestrator.cancel()
        await task

    @pytest.mark.asyncio
    async def test_flow_can_be_restarted(self, orchestrator, popups, provider):
        first = asyncio.create_task(orchestrator.start_auth_flow())
        (await _opened(popups)).close()
        await first

        second = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        assert len(popups) == 2
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)

        assert await second is not None
        assert orchestrator.last_error is None

    @pytest.mark.asyncio
    async def test_timeout(self, service, callbacks):
        orchestrator = FlowOrchestrator(
            ServiceBackend(service),
            FakePopup,
            poll_interval=0.01,
            flow_timeout=0.05,
            on_error=callbacks["error"],
        )

        assert await orchestrator.start_auth_flow() is None
        assert orchestrator.state is FlowState.ERROR
        assert orchestrator.last_error.error == "timeout"
        callbacks["error"].assert_called_once()

    @pytest.mark.asyncio
    async def test_backend_failure_before_window_opens(self, callbacks):
        backend = Mock()
        backend.begin_authorization = AsyncMock(side_effect=AuthFlowError("down", error="backend_error"))
        popup_factory = Mock()
        orchestrator = FlowOrchestrator(backend, popup_factory, on_error=callbacks["error"])

        assert await orchestrator.start_auth_flow() is None
        assert orchestrator.state is FlowState.ERROR
        popup_factory.assert_not_called()
        callbacks["error"].assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_success_callback_does_not_break_flow(self, service, provider):
        popups = []

        def popup_factory():
            popups.append(FakePopup())
            return popups[-1]

        orchestrator = FlowOrchestrator(
            ServiceBackend(service),
            popup_factory,
            poll_interval=0.01,
            on_success=Mock(side_effect=RuntimeError("callback bug")),
        )
        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)

        assert await task is not None
        assert orchestrator.state is FlowState.SUCCESS


class TestHandleResponse:
    """Validation of auth-response messages"""

    @pytest.fixture
    def orchestrator(self):
        return FlowOrchestrator(Mock(), FakePopup)

    def test_valid_response(self, orchestrator):
        message = _success({"code": "abc", "state": "s-1"})
        assert orchestrator.handle_response(message, "s-1") == ("abc", "s-1")

    def test_error_in_query(self, orchestrator):
        message = AuthResponseMessage(status="success", query="error=server_error")

        with pytest.raises(AuthenticationError) as exc_info:
            orchestrator.handle_response(message, "s-1")
        assert exc_info.value.error == "server_error"

    @pytest.mark.parametrize("query", [{"code": "abc"}, {"state": "s-1"}, {}])
    def test_missing_parameters(self, orchestrator, query):
        with pytest.raises(AuthenticationError) as exc_info:
            orchestrator.handle_response(_success(query), "s-1")
        assert exc_info.value.error == "invalid_response"

    def test_state_mismatch(self, orchestrator):
        with pytest.raises(AuthenticationError) as exc_info:
            orchestrator.handle_response(_success({"code": "abc", "state": "other"}), "s-1")
        assert exc_info.value.error == "invalid_state"


class TestFlowMiddleware:
    """Middleware hook ordering and isolation"""

    @pytest.mark.asyncio
    async def test_hook_order(self, orchestrator, popups, provider):
        events = []
        orchestrator.use(RecordingMiddleware("a", events)).use(RecordingMiddleware("b", events))

        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        await task

        exchange = [(name, hook) for name, hook, op in events if op == "exchange"]
        assert exchange == [("a", "before"), ("b", "before"), ("b", "after"), ("a", "after")]
        assert [op for name, hook, op in events if name == "a" and hook == "before"] == [
            "start_auth_flow",
            "handle_response",
            "exchange",
        ]

    @pytest.mark.asyncio
    async def test_error_hooks_run_in_reverse(self, orchestrator, popups, provider):
        events = []
        orchestrator.use(RecordingMiddleware("a", events)).use(RecordingMiddleware("b", events))

        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success({"state": provider.authorize(popup.url)["state"]}), ORIGIN)
        await task

        errors = [(name, op) for name, hook, op in events if hook == "on_error"]
        assert errors == [("b", "handle_response"), ("a", "handle_response")]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_change_outcome(self, orchestrator, popups, provider):
        orchestrator.use(BrokenMiddleware())

        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)

        assert await task is not None

    @pytest.mark.asyncio
    async def test_analytics_events(self, orchestrator, popups, provider):
        tracker = Mock()
        orchestrator.use(AnalyticsMiddleware(tracker))

        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success(provider.authorize(popup.url)), ORIGIN)
        await task

        events = [c.args[0] for c in tracker.call_args_list]
        assert events == ["auth_started", "auth_success"]

    @pytest.mark.asyncio
    async def test_analytics_error_event(self, orchestrator, popups, provider):
        tracker = Mock()
        orchestrator.use(AnalyticsMiddleware(tracker))

        task = asyncio.create_task(orchestrator.start_auth_flow())
        popup = await _opened(popups)
        orchestrator.channel.post(_success({"state": provider.authorize(popup.url)["state"]}), ORIGIN)
        await task

        event, data = tracker.call_args_list[-1].args
        assert event == "auth_error"
        assert data["operation"] == "handle_response"
        assert data["error"] == "invalid_response"


class TestChannelAndPopup:
    """Message channel and browser window"""

    def test_channel_message_parsing(self):
        valid = ChannelMessage(data=_success({"code": "c", "state": "s"}).model_dump(), origin=ORIGIN)
        assert valid.as_auth_response().query == "code=c&state=s"

        assert ChannelMessage(data="text", origin=ORIGIN).as_auth_response() is None
        assert ChannelMessage(data={"type": "other"}, origin=ORIGIN).as_auth_response() is None
        assert ChannelMessage(data={"type": "auth-response", "status": "?"}, origin=ORIGIN).as_auth_response() is None

    @pytest.mark.asyncio
    async def test_channel_drain(self):
        channel = MessageChannel()
        channel.post({"type": "auth-response", "status": "success"}, ORIGIN)
        channel.post({"type": "auth-response", "status": "error"}, ORIGIN)

        assert (await channel.receive()).data["status"] == "success"
        channel.drain()
        assert channel.receive_nowait() is None

    def test_browser_popup(self):
        with patch("authflow.flow.channel.webbrowser") as browser:
            browser.open.return_value = True
            popup = BrowserPopup()
            assert popup.closed

            popup.open("https://idp.example.test/authorize")

            browser.open.assert_called_once_with("https://idp.example.test/authorize")
            assert not popup.closed
            popup.close()
            assert popup.closed

    def test_browser_popup_without_browser(self):
        with patch("authflow.flow.channel.webbrowser") as browser:
            browser.open.return_value = False

            with pytest.raises(OSError):
                BrowserPopup().open("https://idp.example.test/authorize")


class TestErrorMessages:
    def test_known_error(self):
        assert describe_error("access_denied") == "Authentication cancelled"

    def test_unknown_error_with_description(self):
        assert describe_error("weird", "details") == "Authentication error: details"


class TestFromSettings:
    def test_values_come_from_settings(self, service):
        settings = make_settings(POPUP_POLL_INTERVAL_MS=250, AUTH_SESSION_MAX_AGE=120)
        orchestrator = FlowOrchestrator.from_settings(settings, ServiceBackend(service), popup_factory=FakePopup)

        assert orchestrator._poll_interval == 0.25
        assert orchestrator._flow_timeout == 120.0
        assert orchestrator._expected_origin == "http://testserver"
