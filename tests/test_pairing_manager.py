import asyncio
import json

import pytest

from botdock.core.types import BotStatus, PairingStatus
from botdock.errors import (
    InvalidPhoneNumberError,
    PairingError,
    PairingInProgressError,
    PairingRejectedError,
    PairingTimeoutError,
)
from botdock.pairing.manager import (
    CONNECTED_CODE,
    PairingAttempt,
    PairingSessionManager,
    normalize_phone_number,
)

from tests.fakes import FakeConnector

PHONE = "15551234567"


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def manager(config, resolver, connector, bot_repo):
    mgr = PairingSessionManager(config.pairing, resolver, connector, bot_repo=bot_repo)
    yield mgr
    await mgr.shutdown()


@pytest.fixture
async def bot(bot_repo):
    return await bot_repo.create_bot("echo", "alice", "https://example.com/echo.git")


def test_normalize_phone_number():
    assert normalize_phone_number("+1 (555) 123-4567") == PHONE
    with pytest.raises(InvalidPhoneNumberError):
        normalize_phone_number("12345")
    with pytest.raises(ValueError):
        normalize_phone_number("")


@pytest.mark.asyncio
async def test_code_then_open_connects_session(manager, connector, resolver, bot_repo, bot):
    code = await manager.generate_pairing_code(PHONE, "alice", bot.id)

    assert code == "ABCD-1234"
    assert connector.last.requested == [PHONE]
    attempt = manager.active_attempt("alice", bot.id)
    assert attempt is not None

    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.PAIRING
    assert stored.pairing_code == "ABCD-1234"
    assert stored.phone_number == PHONE

    connector.last.open()
    assert await attempt.wait() == "connected"

    status = await resolver.check_session_status("alice", bot.id)
    assert status.connected is True
    assert status.session_info["phone_number"] == PHONE
    assert status.session_info["session_id"] == "15551234567@s.whatsapp.net"
    assert status.session_info["connected_at"]
    assert manager.active_attempt("alice", bot.id) is None

    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.PENDING
    assert stored.pairing_status == "connected"

    await asyncio.sleep(0.05)
    assert connector.last.closed is True


@pytest.mark.asyncio
async def test_open_before_code_returns_connected(config, resolver, bot_repo, bot):
    connector = FakeConnector(code=None, open_on_connect=True)
    manager = PairingSessionManager(config.pairing, resolver, connector, bot_repo=bot_repo)
    try:
        code = await manager.generate_pairing_code(PHONE, "alice", bot.id)
    finally:
        await manager.shutdown()

    assert code == CONNECTED_CODE
    assert (await resolver.check_session_status("alice", bot.id)).connected is True


@pytest.mark.asyncio
async def test_session_info_written_while_pairing(manager, resolver, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)

    info = await resolver.get_session_info("alice", bot.id)

    assert info["status"] == "pairing"
    assert info["owner"] == "alice"
    assert info["bot_id"] == bot.id
    assert (await resolver.check_session_status("alice", bot.id)).reason == "no_creds"


@pytest.mark.asyncio
async def test_rejected_code_request_leaves_no_session(config, resolver, bot_repo, bot):
    connector = FakeConnector(error=RuntimeError("rate limited"))
    manager = PairingSessionManager(config.pairing, resolver, connector, bot_repo=bot_repo)

    with pytest.raises(PairingRejectedError, match="rate limited"):
        await manager.generate_pairing_code(PHONE, "alice", bot.id)

    assert not resolver.session_path("alice", bot.id).exists()
    assert manager.active_attempt("alice", bot.id) is None
    assert connector.last.closed is True
    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.PAIRING_FAILED
    assert stored.pairing_status == "failed"


@pytest.mark.asyncio
async def test_close_before_open_cleans_up(manager, connector, resolver, bot_repo, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)

    connector.last.drop("logged out")

    assert await attempt.wait() == "failed"
    assert "logged out" in str(attempt.error)
    assert not resolver.session_path("alice", bot.id).exists()
    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.PAIRING_FAILED
    assert "logged out" in stored.error


@pytest.mark.asyncio
async def test_timeout_after_code(config, resolver, bot_repo, bot):
    config.pairing.timeout_seconds = 0.2
    connector = FakeConnector()
    manager = PairingSessionManager(config.pairing, resolver, connector, bot_repo=bot_repo)

    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)

    assert await attempt.wait() == "timed_out"
    assert isinstance(attempt.error, PairingTimeoutError)
    assert str(attempt.error) == "Pairing timeout (0.2 seconds)"
    assert not resolver.session_path("alice", bot.id).exists()
    assert manager.active_attempt("alice", bot.id) is None
    assert connector.last.closed is True
    assert (await bot_repo.get_bot(bot.id)).pairing_status == "timed_out"


@pytest.mark.asyncio
async def test_timeout_before_code_reaches_caller(config, resolver, bot):
    config.pairing.timeout_seconds = 0.2
    manager = PairingSessionManager(config.pairing, resolver, FakeConnector(code=None))

    with pytest.raises(PairingTimeoutError):
        await manager.generate_pairing_code(PHONE, "alice", bot.id)

    assert not resolver.session_path("alice", bot.id).exists()


@pytest.mark.asyncio
async def test_concurrent_attempt_rejected(manager, connector, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)

    with pytest.raises(PairingInProgressError):
        await manager.generate_pairing_code(PHONE, "alice", bot.id)
    assert len(connector.connections) == 1


@pytest.mark.asyncio
async def test_retry_after_failure_starts_clean(manager, connector, resolver, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)
    (resolver.session_path("alice", bot.id) / "pre-key-1.json").write_text("{}")
    connector.last.drop("connection lost")
    await attempt.wait()

    code = await manager.generate_pairing_code(PHONE, "alice", bot.id)

    assert code == "ABCD-1234"
    files = sorted(p.name for p in resolver.session_path("alice", bot.id).iterdir())
    assert files == ["session_info.json"]


@pytest.mark.asyncio
async def test_connect_failure_raises_pairing_error(config, resolver, bot):
    connector = FakeConnector(connect_error=OSError("bridge missing"))
    manager = PairingSessionManager(config.pairing, resolver, connector)

    with pytest.raises(PairingError, match="bridge missing"):
        await manager.generate_pairing_code(PHONE, "alice", bot.id)

    assert not resolver.session_path("alice", bot.id).exists()
    assert manager.active_attempt("alice", bot.id) is None


@pytest.mark.asyncio
async def test_delete_session_aborts_attempt(manager, connector, resolver, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)

    assert await manager.delete_session("alice", bot.id) is True

    assert attempt.state == "failed"
    assert connector.last.closed is True
    assert not resolver.session_path("alice", bot.id).exists()
    assert manager.active_attempt("alice", bot.id) is None


@pytest.mark.asyncio
async def test_connected_bot_that_is_online_keeps_status(manager, connector, bot_repo, bot):
    await bot_repo.update_bot(bot.id, status=BotStatus.ONLINE, pid=999)
    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)
    # the code-issued bookkeeping moved it to pairing; simulate the live process
    await bot_repo.update_bot(bot.id, status=BotStatus.ONLINE)

    connector.last.open()
    await attempt.wait()

    stored = await bot_repo.get_bot(bot.id)
    assert stored.status == BotStatus.ONLINE
    assert stored.pairing_status == "connected"


@pytest.mark.asyncio
async def test_session_info_file_is_valid_json_after_connect(manager, connector, resolver, bot):
    await manager.generate_pairing_code(PHONE, "alice", bot.id)
    attempt = manager.active_attempt("alice", bot.id)
    connector.last.open()
    await attempt.wait()

    raw = (resolver.session_path("alice", bot.id) / "session_info.json").read_text()
    assert json.loads(raw)["status"] == "connected"


def test_failure_outcomes_match_pairing_status():
    assert PairingError("boom").outcome == PairingStatus.FAILED
    assert PairingRejectedError("no").outcome == PairingStatus.FAILED
    assert PairingTimeoutError(1).outcome == PairingStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_attempt_without_connection_fails_cleanly(manager, resolver, bot_repo, bot):
    attempt = PairingAttempt(
        owner="alice",
        bot_id=bot.id,
        phone_number=PHONE,
        session_dir=resolver.session_path("alice", bot.id),
        code=asyncio.get_running_loop().create_future(),
    )

    await manager._run_attempt(attempt)

    assert attempt.state == "failed"
    assert str(attempt.error) == "Pairing connection is not open"
    with pytest.raises(PairingError):
        attempt.code.result()
    assert (await bot_repo.get_bot(bot.id)).pairing_status == "failed"
