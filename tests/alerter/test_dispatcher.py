"""Tests for operator notification fan-out and channels."""

import json
from functools import partial
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from futures_gap_monitor.alerter.channels.discord import DiscordChannel
from futures_gap_monitor.alerter.channels.telegram import TelegramChannel
from futures_gap_monitor.alerter.dispatcher import AlertDispatcher, OperatorNotifier
from futures_gap_monitor.alerter.formatter import AlertFormatter, escape_html
from futures_gap_monitor.alerter.realtime import RedisRealtimeSink


def channel(name: str, result: bool | Exception = True) -> MagicMock:
    mock = MagicMock()
    mock.name = name
    if isinstance(result, Exception):
        mock.send = AsyncMock(side_effect=result)
    else:
        mock.send = AsyncMock(return_value=result)
    return mock


@pytest.fixture
def formatted():
    return AlertFormatter().format("Tick vendor login failing", "Login <failed> 5 times & counting")


class Recorder:
    """Records outgoing requests and replays scripted responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        if "telegram" in request.url.host:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(204)


@pytest.fixture
def http(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    """Routes every httpx.AsyncClient through a recording mock transport."""
    recorder = Recorder()
    real_client = httpx.AsyncClient
    monkeypatch.setattr(httpx, "AsyncClient", partial(real_client, transport=httpx.MockTransport(recorder)))
    return recorder


class TestAlertFormatter:
    def test_escapes_telegram_html(self, formatted) -> None:
        assert "&lt;failed&gt;" in formatted.telegram_text
        assert "&amp;" in formatted.telegram_text
        assert formatted.telegram_text.startswith("<b>")

    def test_discord_embed(self, formatted) -> None:
        assert formatted.discord_embed["description"] == "Login <failed> 5 times & counting"
        assert "Tick vendor login failing" in formatted.discord_embed["title"]

    def test_escape_html(self) -> None:
        assert escape_html("a<b>&c") == "a&lt;b&gt;&amp;c"


class TestAlertDispatcher:
    """Tests for AlertDispatcher."""

    @pytest.mark.asyncio
    async def test_all_channels_succeed(self, formatted) -> None:
        dispatcher = AlertDispatcher([channel("discord"), channel("telegram")])

        result = await dispatcher.dispatch(formatted)

        assert result.success_count == 2
        assert result.all_succeeded

    @pytest.mark.asyncio
    async def test_failures_are_collected(self, formatted) -> None:
        dispatcher = AlertDispatcher(
            [channel("discord", False), channel("telegram", RuntimeError("boom")), channel("other")]
        )

        result = await dispatcher.dispatch(formatted)

        assert result.success_count == 1
        assert result.failure_count == 2
        assert result.failed_channels == ["discord", "telegram"]

    @pytest.mark.asyncio
    async def test_no_channels(self, formatted) -> None:
        result = await AlertDispatcher([]).dispatch(formatted)
        assert result.success_count == 0
        assert not result.all_succeeded


class TestOperatorNotifier:
    """Tests for OperatorNotifier."""

    @pytest.mark.asyncio
    async def test_notify_passes_recipient(self) -> None:
        telegram = channel("telegram")
        notifier = OperatorNotifier(AlertDispatcher([telegram]))

        result = await notifier.notify("12345", "Subject", "Body")

        assert result.all_succeeded
        alert, recipient = telegram.send.await_args.args
        assert recipient == "12345"
        assert "Subject" in alert.title

    @pytest.mark.asyncio
    async def test_notify_operators_fans_out_to_recipients(self) -> None:
        telegram = channel("telegram")
        notifier = OperatorNotifier(AlertDispatcher([telegram]), recipients=("111", "222"))

        await notifier.notify_operators("Subject", "Body")

        recipients = [call.args[1] for call in telegram.send.await_args_list]
        assert recipients == [None, "111", "222"]

    @pytest.mark.asyncio
    async def test_dry_run_sends_nothing(self) -> None:
        telegram = channel("telegram")
        notifier = OperatorNotifier(AlertDispatcher([telegram]), dry_run=True)

        await notifier.notify_operators("Subject", "Body")

        telegram.send.assert_not_awaited()


class TestChannels:
    """Tests for the Discord and Telegram channels."""

    @pytest.mark.asyncio
    async def test_discord_posts_embed(self, http: Recorder, formatted) -> None:
        ok = await DiscordChannel("https://discord.example.test/webhook").send(formatted)

        assert ok is True
        body = json.loads(http.requests[0].content)
        assert body["embeds"][0]["title"] == formatted.discord_embed["title"]

    @pytest.mark.asyncio
    async def test_discord_skips_addressed_sends(self, http: Recorder, formatted) -> None:
        ok = await DiscordChannel("https://discord.example.test/webhook").send(formatted, "12345")

        assert ok is True
        assert http.requests == []

    @pytest.mark.asyncio
    async def test_discord_retries_once_on_429(self, http: Recorder, formatted) -> None:
        http.responses.extend(
            [httpx.Response(429, json={"retry_after": 0}), httpx.Response(204)]
        )

        ok = await DiscordChannel("https://discord.example.test/webhook").send(formatted)

        assert ok is True
        assert len(http.requests) == 2

    @pytest.mark.asyncio
    async def test_discord_error_status(self, http: Recorder, formatted) -> None:
        http.responses.append(httpx.Response(500))

        assert await DiscordChannel("https://discord.example.test/webhook").send(formatted) is False

    @pytest.mark.asyncio
    async def test_telegram_uses_recipient_chat(self, http: Recorder, formatted) -> None:
        ok = await TelegramChannel("bot-token", "default-chat").send(formatted, "999")

        assert ok is True
        body = json.loads(http.requests[0].content)
        assert body["chat_id"] == "999"
        assert body["parse_mode"] == "HTML"
        assert "botbot-token" in http.requests[0].url.path

    @pytest.mark.asyncio
    async def test_telegram_api_error(self, http: Recorder, formatted) -> None:
        http.responses.append(
            httpx.Response(200, json={"ok": False, "description": "chat not found"})
        )

        assert await TelegramChannel("bot-token", "default-chat").send(formatted) is False


class TestRedisRealtimeSink:
    @pytest.mark.asyncio
    async def test_publishes_json_on_event_channel(self) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(return_value=1)
        sink = RedisRealtimeSink(redis)

        await sink.publish("gap-alert", {"alertType": "gap_1", "deviationPercent": 100.0})

        channel_name, message = redis.publish.await_args.args
        assert channel_name == "futures_gap:events:gap-alert"
        assert json.loads(message) == {"alertType": "gap_1", "deviationPercent": 100.0}
