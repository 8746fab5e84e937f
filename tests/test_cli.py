import os
from pathlib import Path
import subprocess
import sys

from conftest import make_players, write_jsonl


REPO_ROOT = Path(__file__).resolve().parents[1]


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["SOURCE_DIR"] = str(tmp_path / "data" / "source")
    env["RATE_LIMIT_DELAY_SECONDS"] = "0"
    env["RETRY_BASE_DELAY_SECONDS"] = "0"
    env["MAX_FETCH_ATTEMPTS"] = "1"
    env["CANCEL_POLL_SECONDS"] = "0"
    return env


def _cli(tmp_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "mafia_import.main", *args],
        cwd=REPO_ROOT,
        env=_base_env(tmp_path),
        check=False,
        capture_output=True,
        text=True,
    )


def write_snapshot(root: Path) -> None:
    write_jsonl(root / "clubs" / "page-1.jsonl", [{"id": "c1", "name": "Night Owls"}])
    write_jsonl(root / "players" / "page-1.jsonl", make_players(3))
    write_jsonl(root / "club_members" / "c1.jsonl", [{"player_id": "p1", "is_president": True}])
    write_jsonl(
        root / "tournaments" / "page-1.jsonl",
        [{"id": "t1", "name": "Spring Cup", "start_date": "2024-03-01"}],
    )
    write_jsonl(
        root / "games" / "t1.jsonl",
        [
            {
                "id": "g1",
                "date": "2024-03-01",
                "winner": "CITIZENS",
                "participants": [
                    {"player_id": "p1", "role": "DON"},
                    {"player_id": "p2", "role": "SHERIFF", "is_winner": True},
                ],
            }
        ],
    )


def test_cli_returns_nonzero_when_source_is_missing(tmp_path: Path) -> None:
    proc = _cli(tmp_path, "run")

    assert proc.returncode == 1
    assert "status=FAILED" in proc.stdout


def test_cli_run_status_and_history(tmp_path: Path) -> None:
    write_snapshot(tmp_path / "data" / "source")

    proc = _cli(tmp_path, "run", "--trigger-source", "scheduled")

    assert proc.returncode == 0
    assert "status=COMPLETED" in proc.stdout
    assert "trigger=scheduled" in proc.stdout
    assert "skipped=-" in proc.stdout

    status = _cli(tmp_path, "status")
    assert status.returncode == 0
    assert "running=False progress=100" in status.stdout
    assert "latest_status=COMPLETED" in status.stdout

    history = _cli(tmp_path, "history", "--limit", "5")
    assert history.returncode == 0
    assert "run_id=1 type=FULL trigger=scheduled status=COMPLETED" in history.stdout


def test_cli_source_dir_flag_overrides_environment(tmp_path: Path) -> None:
    snapshot = tmp_path / "elsewhere"
    write_snapshot(snapshot)

    proc = _cli(tmp_path, "--source-dir", str(snapshot), "run", "--fresh")

    assert proc.returncode == 0
    assert "status=COMPLETED" in proc.stdout


def test_cli_retry_pages_without_skipped_pages_fails(tmp_path: Path) -> None:
    write_snapshot(tmp_path / "data" / "source")
    assert _cli(tmp_path, "run").returncode == 0

    proc = _cli(tmp_path, "retry-pages", "--run-id", "1", "--phase", "PLAYERS")

    assert proc.returncode == 1
    assert "error=run 1 has no skipped pages for PLAYERS" in proc.stdout


def test_cli_cancel_and_unlock(tmp_path: Path) -> None:
    cancel = _cli(tmp_path, "cancel")
    assert cancel.returncode == 1
    assert "cancel_requested=False" in cancel.stdout

    unlock = _cli(tmp_path, "unlock")
    assert unlock.returncode == 0
    assert "unlocked=True" in unlock.stdout
