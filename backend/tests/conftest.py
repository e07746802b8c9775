import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Module-level singletons read configuration on import, so the test
# environment has to be in place before anything under homebase loads.
_TEST_DIR = tempfile.mkdtemp(prefix="homebase-tests-")
os.environ["HOMEBASE_DB_PATH"] = os.path.join(_TEST_DIR, "homebase.sqlite3")
os.environ["QUIET_HOURS_DEFAULT_START"] = "00:00"
os.environ["QUIET_HOURS_DEFAULT_END"] = "00:00"
os.environ["OUTBOX_IMMEDIATE_DELIVERY"] = "false"
os.environ["AUTH_REQUIRED"] = "false"
os.environ["SERVICE_ROLE_KEY"] = ""
os.environ.pop("FIREBASE_CREDENTIALS_PATH", None)
os.environ.pop("RESEND_API_KEY", None)

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from homebase.services.change_feed import ChangeFeed  # noqa: E402
from homebase.services.invoice_generator import LocalInvoiceGenerator  # noqa: E402
from homebase.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from homebase.services.notification_store import NotificationStore  # noqa: E402
from homebase.services.workflow_engine import WorkflowStateMachine  # noqa: E402
from homebase.services.workflow_store import WorkflowStore  # noqa: E402


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 14, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def wf_store(tmp_path, feed):
    return WorkflowStore(db_path=str(tmp_path / "workflows.sqlite3"), feed=feed)


@pytest.fixture
def notif_store(tmp_path, feed):
    return NotificationStore(db_path=str(tmp_path / "notifications.sqlite3"), feed=feed)


@pytest.fixture
def triggered():
    return []


@pytest.fixture
def dispatcher(notif_store, clock, triggered):
    return NotificationDispatcher(
        store=notif_store,
        retry_trigger=triggered.append,
        clock=clock,
        immediate_delivery=True,
    )


@pytest.fixture
def machine(wf_store, dispatcher, clock):
    return WorkflowStateMachine(
        store=wf_store,
        dispatcher=dispatcher,
        invoices=LocalInvoiceGenerator(store=wf_store),
        clock=clock,
    )
