from __future__ import annotations

from typing import Any

import pytest
import requests

from bitrix_connector.bitrix import client as client_module
from bitrix_connector.bitrix.client import BitrixClient, flatten_params
from bitrix_connector.config.provider import Account
from bitrix_connector.errors import BitrixApiError
from bitrix_connector.services.rate_limiter import MinIntervalRateLimiter
from bitrix_connector.settings import Settings


class FakeResponse:
    def __init__(self, payload: Any = None, *, status_code: int = 200, content: bytes = b"") -> None:
        self._payload = payload
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Bad Request"
        self.content = content

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self) -> None:
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code}", response=self)  # type: ignore[arg-type]


class PostRecorder:
    def __init__(self, *responses: FakeResponse) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, url: str, params: Any = None, headers: Any = None, timeout: Any = None) -> FakeResponse:
        self.calls.append({"url": url, "params": list(params or []), "timeout": timeout})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_client(**kwargs: Any) -> BitrixClient:
    options: dict[str, Any] = {
        "webhook_secret": "hook",
        "user_id": "1",
        "bot_id": "7",
        "min_interval_ms": 0,
    }
    options.update(kwargs)
    return BitrixClient("example.bitrix24.com", **options)


@pytest.fixture
def post(monkeypatch: pytest.MonkeyPatch) -> PostRecorder:
    recorder = PostRecorder(FakeResponse({"result": True}))
    monkeypatch.setattr(client_module.requests, "post", recorder)
    return recorder


@pytest.mark.unit
def test_flatten_params() -> None:
    pairs = flatten_params(
        {
            "BOT_ID": 7,
            "FIELDS": {"HIDDEN": "N", "COMMON": True},
            "LANG": [{"LANGUAGE_ID": "en", "TITLE": "Help"}],
            "SKIP": None,
        }
    )
    assert pairs == [
        ("BOT_ID", "7"),
        ("FIELDS[HIDDEN]", "N"),
        ("FIELDS[COMMON]", "Y"),
        ("LANG[0][LANGUAGE_ID]", "en"),
        ("LANG[0][TITLE]", "Help"),
    ]


@pytest.mark.unit
def test_build_url_variants() -> None:
    assert make_client().build_url("imbot.message.add") == (
        "https://example.bitrix24.com/rest/1/hook/imbot.message.add"
    )
    assert make_client(user_id=None).build_url("profile.info") == (
        "https://example.bitrix24.com/rest/profile.info"
    )


@pytest.mark.unit
def test_from_account_uses_settings() -> None:
    account = Account(
        account_id="default", domain="acme.bitrix24.com", webhook_secret="s", user_id="3", bot_id="9"
    )
    settings = Settings(min_request_interval_ms=250, http_timeout_seconds=12.0)
    client = BitrixClient.from_account(account, settings)

    assert client.bot_id == "9"
    assert client.rate_limiter.state.min_interval_ms == 250
    assert client.build_url("x") == "https://acme.bitrix24.com/rest/3/s/x"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_api_posts_query_and_returns_result(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"result": {"ID": 5}})]
    client = make_client(client_id="app-token", timeout_seconds=9.0)

    result = await client.call_api("imbot.command.update", {"COMMAND_ID": 5, "FIELDS": {"HIDDEN": "N"}})

    assert result == {"ID": 5}
    call = post.calls[0]
    assert call["url"].endswith("/rest/1/hook/imbot.command.update")
    assert call["params"] == [
        ("COMMAND_ID", "5"),
        ("FIELDS[HIDDEN]", "N"),
        ("CLIENT_ID", "app-token"),
    ]
    assert call["timeout"] == 9.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_api_error_field_raises(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"error": "ERROR_CORE", "error_description": "Access denied"})]

    with pytest.raises(BitrixApiError, match="Access denied"):
        await make_client().call_api("imbot.message.add", {})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_api_http_error_raises(post: PostRecorder) -> None:
    post.responses = [FakeResponse({}, status_code=401)]

    with pytest.raises(BitrixApiError) as excinfo:
        await make_client().call_api("profile.info", {})
    assert excinfo.value.status_code == 401


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_api_non_json_raises(post: PostRecorder) -> None:
    post.responses = [FakeResponse(ValueError("no json"))]

    with pytest.raises(BitrixApiError):
        await make_client().call_api("profile.info", {})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_api_network_error_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(*_args: Any, **_kwargs: Any) -> FakeResponse:
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client_module.requests, "post", boom)

    with pytest.raises(BitrixApiError, match="refused"):
        await make_client().call_api("profile.info", {})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limiter_spaces_calls() -> None:
    now = {"ms": 10_000}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["ms"] += round(seconds * 1000)

    limiter = MinIntervalRateLimiter(1000, clock=lambda: now["ms"], sleep=fake_sleep)

    assert await limiter.acquire() == 0.0
    now["ms"] += 300
    waited = await limiter.acquire()

    assert waited == pytest.approx(0.7)
    assert sleeps == [pytest.approx(0.7)]
    assert limiter.state.last_request_ms == 11_000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limiter_wait_is_capped_when_clock_steps_back() -> None:
    now = {"ms": 10_000_000}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    limiter = MinIntervalRateLimiter(1000, clock=lambda: now["ms"], sleep=fake_sleep)

    await limiter.acquire()
    now["ms"] -= 3_600_000
    waited = await limiter.acquire()

    assert waited == pytest.approx(1.0)
    assert sleeps == [pytest.approx(1.0)]
    assert limiter.state.last_request_ms == 6_400_000

    now["ms"] += 5_000
    assert await limiter.acquire() == 0.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_client_calls_go_through_rate_limiter(post: PostRecorder) -> None:
    acquired: list[int] = []

    class CountingLimiter(MinIntervalRateLimiter):
        async def acquire(self) -> float:
            acquired.append(1)
            return 0.0

    client = make_client(rate_limiter=CountingLimiter(0))
    await client.call_api("a", {})
    await client.call_api("b", {})

    assert len(acquired) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_message_converts_and_chunks(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"result": 11})]
    long_text = "**hi**\n" + ("word " * 1000)

    results = await make_client().send_message("42", long_text)

    assert len(results) == 2
    messages = [dict(call["params"])["MESSAGE"] for call in post.calls]
    assert messages[0].startswith("[B]hi[/B]")
    assert all(len(m) <= 4000 for m in messages)
    first = dict(post.calls[0]["params"])
    assert first["BOT_ID"] == "7"
    assert first["DIALOG_ID"] == "42"
    assert first["SYSTEM"] == "N"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_message_requires_bot_id(post: PostRecorder) -> None:
    with pytest.raises(BitrixApiError, match="BOT_ID"):
        await make_client(bot_id=None).send_message("42", "hi")
    assert post.calls == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_answer_command_by_id_or_name(post: PostRecorder) -> None:
    client = make_client()
    await client.answer_command("555", "**ok**", command_id="12")
    await client.answer_command("556", "fine", command="status")

    first, second = (dict(call["params"]) for call in post.calls)
    assert first == {"MESSAGE_ID": "555", "MESSAGE": "[B]ok[/B]", "COMMAND_ID": "12"}
    assert second["COMMAND"] == "status"
    assert "COMMAND_ID" not in second

    with pytest.raises(BitrixApiError):
        await client.answer_command("557", "x")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_commands_accepts_mapping_result(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"result": {"1": {"ID": "1", "COMMAND": "help"}, "2": "junk"}})]

    commands = await make_client().list_commands()

    assert commands == [{"ID": "1", "COMMAND": "help"}]
    assert post.calls[0]["url"].endswith("imbot.command.list")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_file_uploads_then_posts(post: PostRecorder) -> None:
    post.responses = [
        FakeResponse({"result": {"ID": 900, "DETAIL_URL": "https://example.bitrix24.com/d/900"}}),
        FakeResponse({"result": 77}),
    ]

    result = await make_client().send_file("42", "report.txt", b"abc", storage_id=3)

    assert result == 77
    upload = dict(post.calls[0]["params"])
    assert upload["id"] == "3"
    assert upload["data[NAME]"] == "report.txt"
    assert upload["fileContent[1]"] == "YWJj"
    message = dict(post.calls[1]["params"])
    assert message["ATTACH[0][FILE][LINK]"] == "https://example.bitrix24.com/d/900"
    assert message["ATTACH[0][FILE][SIZE]"] == "3"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_health_false_on_failure(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"error": "expired_token"})]
    assert await make_client().health() is False

    post.responses = [FakeResponse({"result": {"ID": 1}})]
    assert await make_client().health() is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_download_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        client_module.requests, "get", lambda url, timeout=None: FakeResponse(content=b"data")
    )
    assert await make_client().download_file("https://x/file") == b"data"

    monkeypatch.setattr(
        client_module.requests, "get", lambda url, timeout=None: FakeResponse(status_code=404)
    )
    with pytest.raises(BitrixApiError) as excinfo:
        await make_client().download_file("https://x/missing")
    assert excinfo.value.status_code == 404


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_user_info_returns_first_user(post: PostRecorder) -> None:
    post.responses = [FakeResponse({"result": [{"ID": "5", "NAME": "Ann"}]})]
    client = make_client()

    assert await client.get_user_info("5") == {"ID": "5", "NAME": "Ann"}
    assert post.calls[0]["params"] == [("ID", "5")]

    post.responses = [FakeResponse({"result": []})]
    assert await client.get_user_info("6") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_register_bot_points_events_at_handler(post: PostRecorder) -> None:
    await make_client().register_bot("agent", "Agent", "https://bot.example.com/hook")

    params = dict(post.calls[0]["params"])
    assert post.calls[0]["url"].endswith("imbot.register")
    assert params["CODE"] == "agent"
    assert params["EVENT_MESSAGE_ADD"] == "https://bot.example.com/hook"
    assert params["EVENT_BOT_DELETE"] == "https://bot.example.com/hook"
    assert params["PROPERTIES[NAME]"] == "Agent"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_command_registration_and_removal(post: PostRecorder) -> None:
    client = make_client()
    await client.register_command("report", "https://h", title="Weekly report", hidden=True)
    await client.unregister_command(44)
    await client.send_typing("42")

    register = dict(post.calls[0]["params"])
    assert register["BOT_ID"] == "7"
    assert register["HIDDEN"] == "Y"
    assert register["COMMON"] == "N"
    assert register["LANG[0][TITLE]"] == "Weekly report"
    assert register["EVENT_COMMAND_ADD"] == "https://h"
    assert post.calls[1]["url"].endswith("imbot.command.unregister")
    assert post.calls[1]["params"] == [("COMMAND_ID", "44")]
    assert dict(post.calls[2]["params"]) == {"BOT_ID": "7", "DIALOG_ID": "42"}
