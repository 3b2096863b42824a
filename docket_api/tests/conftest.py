"""
Shared fixtures: a fresh SQLite database per test and a seeded docket.

Seeded data (two users, so every test can check ownership scoping):

    alice  C1 "Smith v. Jones" (CA-SF, assignee a@firm.com)
           C2 "Doe Matter" (NY, no assignees)
           T1 (CA-SF, assignee a@firm.com) -> E1, E2
           T2 (CA-SF, assignee z@firm.com)
           T3 (NY) -> E3
    bob    C3 (CA-SF), T4 (CA-SF, assignee a@firm.com) -> E4
"""

import os
import sys
from datetime import date, datetime
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

TEST_SECRET = "docket-test-signing-key-0123456789abcdef"
OLD_SECRET = "docket-retired-signing-key-fedcba9876543210"
PASSWORD = "correct horse battery"

os.environ["JWT_SECRET_KEY"] = TEST_SECRET
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

from docket_api.auth import create_api_token, get_password_hash  # noqa: E402
from docket_api.config import get_settings  # noqa: E402
from docket_api.db.models import (  # noqa: E402
    Level, User, DocketCase, Trigger, CaseEvent, ImportEvent, CustomText,
    Assignee, CalendarSubscriber, DashboardOwner, Contact, EventCategory,
)
from docket_api.db.session import get_session_factory, init_db, reset_engine, session_scope  # noqa: E402
from docket_api.token_store import CredentialStore  # noqa: E402


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    """Point the app at a throwaway SQLite file"""
    url = f"sqlite:///{tmp_path / 'docket.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    reset_engine()
    init_db()
    yield url
    reset_engine()
    get_settings.cache_clear()


@pytest.fixture
def session_factory(db_url):
    return get_session_factory()


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def seeded(session_factory):
    """Seed the docket described in the module docstring; returns the ids"""
    ids = SimpleNamespace()
    password_hash = get_password_hash(PASSWORD)

    with session_scope(session_factory) as db:
        alice = User(username="alice", password_hash=password_hash, firstname="Alice",
                     lastname="Adams", email="alice@firm.com")
        bob = User(username="bob", password_hash=password_hash, email="bob@other.com")
        db.add_all([alice, bob])
        db.flush()

        # Contact directory (alice has a duplicated entry)
        db.add_all([
            Contact(user_id=alice.id, email="a@firm.com", name="Alice Adams"),
            Contact(user_id=alice.id, email="a@firm.com", name="Alice Adams"),
            Contact(user_id=alice.id, email="cal@firm.com", name="Team Calendar"),
            Contact(user_id=bob.id, email="a@firm.com", name="Mallory"),
        ])

        c1 = DocketCase(user_id=alice.id, case_matter="Smith v. Jones", case_jurisdiction="CA-SF",
                        initiation_date=date(2024, 1, 10), case_number="CV-001", timezone="America/Los_Angeles")
        c2 = DocketCase(user_id=alice.id, case_matter="Doe Matter", case_jurisdiction="NY",
                        initiation_date=date(2024, 1, 5), timezone="America/New_York")
        c3 = DocketCase(user_id=bob.id, case_matter="Other Firm Case", case_jurisdiction="CA-SF")
        db.add_all([c1, c2, c3])

        t1 = Trigger(user_id=alice.id, trigger_item="Complaint Served", trigger_date=date(2024, 2, 1),
                     trigger_time="09:00", meridiem="AM", service_type="P",
                     service_type_description="Personal", jurisdiction="CA-SF",
                     jurisdiction_description="San Francisco Superior Court")
        t2 = Trigger(user_id=alice.id, trigger_item="Motion Filed", trigger_date=date(2024, 3, 1),
                     jurisdiction="CA-SF")
        t3 = Trigger(user_id=alice.id, trigger_item="Discovery Served", trigger_date=date(2024, 1, 15),
                     jurisdiction="NY")
        t4 = Trigger(user_id=bob.id, trigger_item="Bob's Trigger", trigger_date=date(2024, 2, 2),
                     jurisdiction="CA-SF")
        db.add_all([t1, t2, t3, t4])
        db.flush()

        db.add_all([
            CustomText(case_id=c1.id, case_subjecttext="Smith matter", location="Dept. 302",
                       trigger_customtext="Lead case"),
            CustomText(import_docket_id=t1.id, case_subjecttext="Service of complaint"),
        ])

        e1 = CaseEvent(user_id=alice.id, case_id=c1.id, event_name="Answer Due",
                       event_date=datetime(2024, 2, 15, 9, 0), appointment_length=60,
                       event_type="deadline", court_rule="CCP 412.20", event_timezone="America/Los_Angeles",
                       color=3, event_subject="Answer", event_location="Courtroom 5")
        e2 = CaseEvent(user_id=alice.id, event_name="Case Management Conference",
                       event_date=datetime(2024, 2, 20, 10, 30), event_type="hearing")
        e3 = CaseEvent(user_id=alice.id, case_id=c2.id, event_name="Responses Due",
                       event_date=datetime(2024, 1, 20, 17, 0), event_type="deadline")
        e4 = CaseEvent(user_id=bob.id, event_name="Bob's Event", event_date=datetime(2024, 2, 16))
        db.add_all([e1, e2, e3, e4])
        db.flush()

        db.add_all([
            ImportEvent(import_docket_id=t1.id, case_event_id=e1.id),
            ImportEvent(import_docket_id=t1.id, case_event_id=e2.id),
            ImportEvent(import_docket_id=t3.id, case_event_id=e3.id),
            ImportEvent(import_docket_id=t4.id, case_event_id=e4.id),
        ])

        db.add_all([
            Assignee.for_level(Level.CASE, c1.id, "a@firm.com"),
            Assignee.for_level(Level.TRIGGER, t1.id, " A@Firm.com "),
            Assignee.for_level(Level.TRIGGER, t2.id, "z@firm.com"),
            Assignee.for_level(Level.TRIGGER, t4.id, "a@firm.com"),
            Assignee.for_level(Level.EVENT, e1.id, "a@firm.com"),
            Assignee.for_level(Level.EVENT, e1.id, "A@FIRM.COM "),
            CalendarSubscriber.for_level(Level.CASE, c1.id, "cal@firm.com"),
            # Trigger-level row that also carries a case id; only the flag counts
            CalendarSubscriber.for_level(Level.TRIGGER, t1.id, "trigcal@firm.com", case_id=c1.id),
            DashboardOwner.for_level(Level.CASE, c1.id, "boss@firm.com", user_id=alice.id),
            DashboardOwner.for_level(Level.CASE, c1.id, "spy@other.com", user_id=bob.id),
            EventCategory(case_event_id=e1.id, user_id=alice.id, label="Filing"),
            EventCategory(case_event_id=e1.id, user_id=alice.id, label=" filing "),
            EventCategory(case_event_id=e1.id, user_id=alice.id, label="Urgent"),
            EventCategory(case_event_id=e1.id, user_id=bob.id, label="Secret"),
        ])
        db.flush()

        ids.alice, ids.bob = alice.id, bob.id
        ids.c1, ids.c2, ids.c3 = c1.id, c2.id, c3.id
        ids.t1, ids.t2, ids.t3, ids.t4 = t1.id, t2.id, t3.id, t4.id
        ids.e1, ids.e2, ids.e3, ids.e4 = e1.id, e2.id, e3.id, e4.id

    return ids


@pytest.fixture
def issue_token(store):
    """Issue a token for a user and store it as their active credential"""
    def _issue(user_id: int, **kwargs) -> str:
        token = create_api_token(user_id, **kwargs)
        store.store_credential(user_id, token)
        return token
    return _issue
