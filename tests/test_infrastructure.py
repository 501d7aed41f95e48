"""
数据库管理器与日志处理器测试
"""
from cl_core.config import Settings
from cl_core.database import DatabaseManager
from cl_core.utils.logger import (
    LedgerProcessor,
    LogContext,
    PIIMaskingProcessor,
    setup_logging,
    trace_id_var,
    user_id_var,
)


async def test_check_connection(db_manager):
    assert await db_manager.check_connection() is True


async def test_check_connection_bad_url(tmp_path):
    manager = DatabaseManager(Settings(db_url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}"))
    try:
        assert await manager.check_connection() is False
    finally:
        await manager.close()


def test_log_context_sets_and_resets():
    with LogContext(trace_id="trace-1", user_id=7):
        event = LedgerProcessor()(None, "info", {"event": "wallet.credit"})

    assert event["action"] == "wallet.credit"
    assert event["trace_id"] == "trace-1"
    assert event["user_id"] == 7
    assert "ts" in event
    assert trace_id_var.get() is None
    assert user_id_var.get() is None


def test_gateway_payload_masking():
    masked = PIIMaskingProcessor()(None, "info", {
        "payer_email": "buyer@example.com",
        "request_body": {"client_secret": "s3cr3t", "note": "access_token=abc123"},
        "headers": [{"Authorization": "Bearer token-abc"}],
        "amount": 10,
    })

    assert masked["payer_email"] == "b***@example.com"
    assert masked["request_body"]["client_secret"] == "***MASKED***"
    assert masked["request_body"]["note"] == "access_token=***MASKED***"
    assert masked["headers"][0]["Authorization"] == "***MASKED***"
    assert masked["amount"] == 10


def test_setup_logging_console():
    setup_logging("DEBUG", "console")
    setup_logging("INFO", "json")
