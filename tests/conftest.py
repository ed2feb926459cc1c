"""Shared fixtures for the mailflow test suite."""

import pytest
import pytest_asyncio

from mailflow.core.automation_store import AutomationStore
from mailflow.core.config import Config, SQLiteConfig, set_config
from mailflow.core.database import SQLiteDatabase
from mailflow.core.execution_ledger import ExecutionLedger
from mailflow.core.record_writer import SqliteRecordWriter
from mailflow.services.action_executor import ActionPipelineExecutor
from mailflow.services.automation_service import AutomationService
from tests.fakes import FakeMailbox, FakeReplyGenerator, FakeTokenRefresher, FakeWebhook


@pytest.fixture(autouse=True)
def config(tmp_path):
    """Point the global configuration at a per-test database."""
    test_config = Config(sqlite=SQLiteConfig(database_path=str(tmp_path / "mailflow.db")))
    set_config(test_config)
    yield test_config
    set_config(None)


@pytest.fixture
def database(config):
    return SQLiteDatabase(config.sqlite.database_path)


@pytest_asyncio.fixture
async def store(database):
    automation_store = AutomationStore(database)
    await automation_store.initialize()
    return automation_store


@pytest_asyncio.fixture
async def ledger(database):
    execution_ledger = ExecutionLedger(database)
    await execution_ledger.initialize()
    return execution_ledger


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def refresher():
    return FakeTokenRefresher()


@pytest.fixture
def webhook():
    return FakeWebhook()


@pytest.fixture
def reply_generator():
    return FakeReplyGenerator()


@pytest.fixture
def executor(store, ledger, mailbox, refresher, webhook, reply_generator, database):
    return ActionPipelineExecutor(
        store=store,
        ledger=ledger,
        mailbox=mailbox,
        token_refresher=refresher,
        record_writer=SqliteRecordWriter(database),
        webhook_client=webhook,
        reply_generator=reply_generator,
    )


@pytest_asyncio.fixture
async def service(database, mailbox, refresher, webhook, reply_generator):
    automation_service = AutomationService(
        database=database,
        mailbox=mailbox,
        token_refresher=refresher,
        webhook_client=webhook,
        reply_generator=reply_generator,
    )
    await automation_service.initialize()
    return automation_service
