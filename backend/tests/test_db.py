"""Database bootstrap and store round trips."""

from datetime import datetime, timezone

from opsagent.db import _connect_args, _ensure_sqlite_parent_dir, session_factory
from opsagent.decision.context import DecisionContextBuilder
from opsagent.domain import AgentInput, ContactInfo, InputSource
from opsagent.models import IntakeStatus
from opsagent.store import AgentStore, from_db_time, to_db_time


def test_ensure_sqlite_parent_dir_creates_nested_parent(tmp_path):
    db_file = tmp_path / "nested" / "db" / "test.db"
    assert not db_file.parent.exists()

    _ensure_sqlite_parent_dir(f"sqlite:///{db_file.as_posix()}")

    assert db_file.parent.exists()


def test_sqlite_connections_are_shared_across_threads():
    assert _connect_args("sqlite:///./x.db") == {"check_same_thread": False}
    assert _connect_args("postgresql://db/ops") == {}


def test_db_time_round_trip_is_utc():
    aware = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    stored = to_db_time(aware)
    assert stored.tzinfo is None
    assert from_db_time(stored) == aware


def test_default_pipeline_prefers_flag_then_name():
    store = AgentStore(session_factory)
    store.create_pipeline("org-1", "Sales", ["Lead"])
    named = store.create_pipeline("org-1", "General intake", ["New"])
    assert store.get_default_pipeline("org-1").id == named.id
    flagged = store.create_pipeline("org-1", "Support", ["Triage"], is_default=True)
    assert store.get_default_pipeline("org-1").id == flagged.id


def test_context_builder_snapshots_org_state():
    store = AgentStore(session_factory)
    store.ensure_organization("org-1", name="Acme", enabled_actions=["escalate", "send_notification"])
    store.create_pipeline("org-1", "General intake", ["New", "Won"], is_default=True)
    member = store.add_team_member("org-1", "Ada", "ada@acme.test", "admin")
    store.create_intake("org-1", "Open one", assigned_to=member.id)
    store.create_intake("org-1", "Closed one", status=IntakeStatus.closed, assigned_to=member.id)
    agent_input = AgentInput(
        source=InputSource.email,
        type="new_inquiry",
        raw_content="hi",
        org_id="org-1",
        correlation_id="cor-1",
        contact_info=ContactInfo(email="jane@client.com"),
    )

    ctx = DecisionContextBuilder(store).build(agent_input)

    assert ctx.org.name == "Acme"
    assert ctx.available_actions == ("send_notification", "escalate")
    assert [s.name for s in ctx.pipelines[0].stages] == ["New", "Won"]
    assert ctx.team[0].open_assignments == 1
    assert [i.title for i in ctx.intakes] == ["Open one"]
    assert ctx.recent_decisions == ()
