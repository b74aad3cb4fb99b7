import json

import sep_cli
import sep_verify
from sep_engine.bundle import load_bundle
from sep_engine.store import SQLiteStore


def test_config_json(capsys):
    assert sep_cli.main(["config", "--json"]) == 0
    cfg = json.loads(capsys.readouterr().out)
    assert cfg["symbol_count"] == 5
    assert cfg["trials_per_block"]["full_stack"] == 30


def test_no_command_prints_help(capsys):
    assert sep_cli.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_simulate_export_verify_audit(tmp_path, capsys):
    db = str(tmp_path / "sep.db")
    out = str(tmp_path / "run.zip")
    assert sep_cli.main(["--db", db, "simulate", "--trials", "5", "--out", out]) == 0
    assert "Simulated run" in capsys.readouterr().out

    bundle = load_bundle(out)
    run = bundle["runs"][0]
    assert set(run["reveals"]) == {"full_stack", "spoon_love", "client_local"}
    assert len(run["logs"]) == 15
    assert {r["rng_source"] for r in run["logs"]} == {"local-secure-random"}
    assert sep_verify.main(["bundle", out, "--strict"]) == 0
    capsys.readouterr()

    exported = str(tmp_path / "all.json")
    assert sep_cli.main(["--db", db, "export", "--out", exported]) == 0
    assert "Exported 1 runs" in capsys.readouterr().out

    assert sep_cli.main(["audit", exported, "--json", "--diagnostics"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["overall"]["totals"]["trials"] == 15
    assert report["exits"]["completers"] == 0  # default minimums are 30 trials per block
    assert "diagnostics" in report

    assert sep_cli.main(["audit", exported, "--mode", "session-weighted"]) == 0
    assert "SEP audit (session-weighted)" in capsys.readouterr().out

    assert sep_cli.main(["schema-validate", exported]) == 0
    assert "BUNDLE_DOCUMENTS_OK" in capsys.readouterr().out


def test_simulate_early_exit(tmp_path, capsys):
    db = str(tmp_path / "sep.db")
    out = str(tmp_path / "quit.json")
    assert sep_cli.main(["--db", db, "simulate", "--trials", "5", "--exit-after", "7", "--out", out]) == 0
    run = load_bundle(out)["runs"][0]
    assert run["session"]["exitedEarly"] is True
    assert run["session"]["total_trials"] == 7
    assert set(run["reveals"]) == {"full_stack"}
    assert run["session"]["blocks"]["spoon_love"]["reveal_status"] == "skipped"
    assert len(SQLiteStore(db).list("runs")) == 1


def test_audit_accepts_session_lists(tmp_path, capsys):
    sessions = [
        {
            "session_id": "s1",
            "participant_id": "p1",
            "full_stack": {"trialResults": [{"target_index_0based": 1, "ghost_index_0based": 2, "selected_index": 1}]},
        }
    ]
    p = tmp_path / "sessions.json"
    p.write_text(json.dumps({"sessions": sessions}), encoding="utf-8")
    assert sep_cli.main(["audit", str(p), "--block", "full_stack", "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["overall"]["totals"]["primaryRight"] == 1


def test_errors_return_two(tmp_path, capsys):
    p = tmp_path / "bad.json"
    p.write_text('"just a string"', encoding="utf-8")
    assert sep_cli.main(["audit", str(p)]) == 2
    assert "ERROR" in capsys.readouterr().err
    assert sep_cli.main(["audit", str(tmp_path / "missing.json")]) == 2
