from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from intake_gate.main import intake_gate
from intake_gate.models import WindowKind, WorkItemWrite
from intake_gate.queue.checkpoint import Checkpoint
from intake_gate.queue.usage_store import UsageStore
from intake_gate.queue.work_queue import WorkQueue
from intake_gate.storage.database import Database

pytestmark = [
    allure.epic("Intake Gate"),
    allure.feature("Operations CLI"),
]


@pytest.fixture(autouse=True)
def _default_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "INTAKE_GATE_ENDPOINTS",
        "INTAKE_GATE_CALLERS",
        "INTAKE_GATE_SOURCE",
        "INTAKE_GATE_CALLER_ID",
    ):
        monkeypatch.delenv(name, raising=False)


def _seed(db_path: Path) -> None:
    database = Database(db_path)
    database.init_schema()
    work_queue = WorkQueue(database)
    work_queue.ingest(
        [
            WorkItemWrite(item_id=str(item_id), payload="{}", item_type="mention")
            for item_id in (1, 2, 3)
        ],
    )
    work_queue.claim_batch(1, owner="crashed-worker")
    Checkpoint(database, source="mentions").advance("3")
    database.close()


def _short_used(database: Database, endpoint: str, window_start: datetime) -> int:
    return UsageStore(database).get(endpoint, WindowKind.SHORT, window_start).used


def test_init_db_and_queue_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    init = runner.invoke(intake_gate, ["init-db", "--db-path", str(db_path)])
    assert init.exit_code == 0
    assert "Schema ready" in init.output

    _seed(db_path)

    stats = runner.invoke(intake_gate, ["queue", "stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0
    assert "Work items: 3" in stats.output
    assert "pending=2 processing=1" in stats.output

    listing = runner.invoke(
        intake_gate,
        ["queue", "list", "--db-path", str(db_path), "--status", "processing"],
    )
    assert listing.exit_code == 0
    assert "1 type=mention status=processing" in listing.output
    assert "claimed_by=crashed-worker" in listing.output

    reap = runner.invoke(
        intake_gate,
        ["queue", "reap", "--db-path", str(db_path), "--older-than-seconds", "3600"],
    )
    assert reap.exit_code == 0
    assert "Released stale claims: 0" in reap.output

    checkpoint = runner.invoke(intake_gate, ["checkpoint", "show", "--db-path", str(db_path)])
    assert checkpoint.exit_code == 0
    assert "Checkpoint mentions: cursor=3" in checkpoint.output


def test_limits_show_reports_usage(tmp_path: Path) -> None:
    db_path = tmp_path / "limits.db"
    database = Database(db_path)
    database.init_schema()
    now = datetime.now(tz=UTC)
    window_start = datetime.fromtimestamp((int(now.timestamp()) // 900) * 900, tz=UTC)
    UsageStore(database).increment("fetch_mentions", WindowKind.SHORT, window_start, "default")
    database.close()

    runner = CliRunner()
    result = runner.invoke(
        intake_gate,
        ["limits", "show", "--db-path", str(db_path), "--endpoint", "fetch_mentions"],
    )

    assert result.exit_code == 0
    assert "fetch_mentions [fair]" in result.output
    assert "short: used=1/75 remaining=74" in result.output
    assert "default=1/75" in result.output

    unknown = runner.invoke(
        intake_gate,
        ["limits", "show", "--db-path", str(db_path), "--endpoint", "nope"],
    )
    assert unknown.exit_code != 0
    assert "Unknown endpoint" in unknown.output


def test_usage_prune_removes_old_windows(tmp_path: Path) -> None:
    db_path = tmp_path / "prune.db"
    database = Database(db_path)
    database.init_schema()
    old_start = datetime(2020, 1, 1, tzinfo=UTC)
    UsageStore(database).increment("get_user", WindowKind.LONG, old_start, "default")
    UsageStore(database).increment(
        "get_user",
        WindowKind.LONG,
        datetime.now(tz=UTC) - timedelta(hours=1),
        "default",
    )
    database.close()

    result = CliRunner().invoke(
        intake_gate,
        ["usage", "prune", "--db-path", str(db_path), "--keep-days", "7"],
    )

    assert result.exit_code == 0
    assert "Usage windows pruned: 1" in result.output


def test_limits_show_omits_share_for_exempt_endpoints(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(
        "INTAKE_GATE_ENDPOINTS",
        "reply_tweet:10/-/-:fair,exempt;fetch_mentions:4/-/-:fair",
    )

    result = CliRunner().invoke(
        intake_gate,
        ["limits", "show", "--db-path", str(tmp_path / "exempt.db")],
    )

    assert result.exit_code == 0
    lines = result.output.splitlines()
    reply_window = lines[lines.index("reply_tweet [fair,exempt]") + 1]
    fetch_window = lines[lines.index("fetch_mentions [fair]") + 1]
    assert "default=" not in reply_window
    assert fetch_window.endswith("default=0/4")


def test_checkpoint_set_seeds_cursor_for_next_fetch(tmp_path: Path) -> None:
    db_path = tmp_path / "seed.db"
    runner = CliRunner()

    result = runner.invoke(intake_gate, ["checkpoint", "set", "--db-path", str(db_path), "1849"])

    assert result.exit_code == 0
    assert "Checkpoint mentions: cursor=1849" in result.output
    database = Database(db_path)
    assert Checkpoint(database, source="mentions").get() == "1849"
    database.close()

    blank = runner.invoke(intake_gate, ["checkpoint", "set", "--db-path", str(db_path), " "])
    assert blank.exit_code != 0
    assert "must not be empty" in blank.output


def test_usage_clear_resets_one_endpoint_or_all(tmp_path: Path) -> None:
    db_path = tmp_path / "clear.db"
    database = Database(db_path)
    database.init_schema()
    store = UsageStore(database)
    window_start = datetime(2026, 10, 18, tzinfo=UTC)
    store.increment("fetch_mentions", WindowKind.SHORT, window_start, "default")
    store.increment("reply_tweet", WindowKind.SHORT, window_start, "default")
    store.increment("reply_tweet", WindowKind.MEDIUM, window_start, "default")
    database.close()
    runner = CliRunner()

    one = runner.invoke(
        intake_gate,
        ["usage", "clear", "--db-path", str(db_path), "--endpoint", "reply_tweet"],
    )
    assert one.exit_code == 0
    assert "Usage windows cleared: 2 (reply_tweet)" in one.output

    database = Database(db_path)
    assert _short_used(database, "fetch_mentions", window_start) == 1
    assert _short_used(database, "reply_tweet", window_start) == 0
    database.close()

    everything = runner.invoke(intake_gate, ["usage", "clear", "--db-path", str(db_path)])
    assert everything.exit_code == 0
    assert "Usage windows cleared: 1 (all endpoints)" in everything.output

    unknown = runner.invoke(
        intake_gate,
        ["usage", "clear", "--db-path", str(db_path), "--endpoint", "nope"],
    )
    assert unknown.exit_code != 0
    assert "Unknown endpoint" in unknown.output
