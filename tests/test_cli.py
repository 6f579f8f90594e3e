import csv
import json
import os
import tempfile

import pytest

from bench.config import RunConfig
from cli.main import build_parser, check_files, config_from_args, load_crypto, main
from cli.report import byte_size, save_results
from cli.scenarios import Scenario, run_all, small_payload_scenarios


def test_camel_case_aliases_are_accepted():
    args = build_parser().parse_args(["--address", "q", "--encrypt", "--encryptKey", "pub.pem",
                                      "--decryptKey", "priv.pem", "--sign", "--signKey", "s.pem",
                                      "--signCert", "c.pem"])

    config = config_from_args(args)

    assert (config.encrypt_key, config.decrypt_key) == ("pub.pem", "priv.pem")
    assert (config.sign_key, config.sign_cert) == ("s.pem", "c.pem")


def test_default_output_is_unique_temp_dir():
    args = build_parser().parse_args(["--address", "q"])

    first, second = config_from_args(args), config_from_args(args)

    assert "brokerbench-" in first.output
    assert first.output != second.output
    assert first.count == 10000
    assert first.mode == "both"


def test_address_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_check_files_reports_each_missing_file(tmp_path):
    config = RunConfig(address="q", tls=True, key=str(tmp_path / "missing.key"), sign=True,
                       sign_key=None, sign_cert=None, count=0)

    errors = check_files(config)

    assert "count must be a positive number" in errors
    assert any("TLS key file" in e and "does not exist" in e for e in errors)
    assert "TLS certificate file is required" in errors
    assert "Signing key file is required" in errors
    assert "Signing certificate file is required" in errors


def test_check_files_only_checks_keys_the_mode_uses(key_files):
    config = RunConfig(address="q", mode="sender", encrypt=True, encrypt_key=key_files["encrypt_key"])

    assert check_files(config) == []


def test_load_crypto_skips_keys_of_the_other_side(key_files):
    config = RunConfig(address="q", mode="receiver", sign=True, encrypt=True, **key_files)

    crypto = load_crypto(config)

    assert crypto.signing_key is None and crypto.encryption_key is None
    assert crypto.verification_key is not None and crypto.decryption_key is not None


@pytest.mark.parametrize("n, text", [(11, "11 B"), (1500, "1.5 kB"), (2_000_000, "2.0 MB")])
def test_byte_size(n, text):
    assert byte_size(n) == text


def test_save_results_writes_csv_and_json(tmp_path):
    metrics = {
        "summary": {"payload_size": 11},
        "sender_snapshots": [{"timestamp": 1700000000000.5, "elapsed": 2.0, "sent": 10, "rate": 5.0}],
        "receiver_snapshots": [],
    }
    out = tmp_path / "run"

    save_results(str(out), metrics)

    with open(out / "sender_snapshots.csv", newline="") as f:
        rows = list(csv.reader(f))
    assert rows == [["timestamp", "sent", "rate"], ["1700000000000", "10", "5.0"]]
    with open(out / "receiver_snapshots.csv", newline="") as f:
        assert list(csv.reader(f)) == [["timestamp", "received", "rate", "avg_latency"]]
    assert json.loads((out / "summary_metrics.json").read_text()) == {"payload_size": 11}
    assert json.loads((out / "full_metrics.json").read_text()) == metrics


def test_scenarios_build_arguments_from_environment():
    env = {"SELF_TEST_HOST": "broker", "SELF_TEST_QUEUE": "bench", "SELF_TEST_TLS_PORT": "8883",
           "SELF_TEST_SIGN_PRIVATE_KEY_PATH": "sign.pem"}

    scenarios = small_payload_scenarios(env)

    assert len(scenarios) == 4
    plain, tls, signed, full = scenarios
    assert plain.args[:4] == ["--host", "broker", "--address", "bench"]
    assert "--tls" not in plain.args
    assert ["--tls", "--port", "8883"] == tls.args[4:7]
    assert "--sign-key" in signed.args and "--encrypt" not in signed.args
    assert "--encrypt" in full.args
    assert all("--output" in s.args for s in scenarios)


def test_disabled_scenarios_are_skipped(monkeypatch):
    ran = []
    monkeypatch.setattr("cli.scenarios.run_scenario", lambda scenario: ran.append(scenario.name) or 0)

    results = run_all([Scenario("a", "", []), Scenario("b", "", [], disabled=True)])

    assert results == {"a": 0}
    assert ran == ["a"]


def test_main_fails_on_missing_key_file(tmp_path):
    code = main(["--address", "q", "--sign", "--sign-key", str(tmp_path / "nope.pem"),
                 "--sign-cert", str(tmp_path / "nope.crt"), "--transport", "memory"])

    assert code == 1


def test_main_runs_in_memory_and_saves_results(tmp_path, key_files, capsys):
    out = tmp_path / "results"
    payload = tmp_path / "payload.bin"
    payload.write_bytes(b"x" * 64)

    code = main(["--address", "q", "--transport", "memory", "--count", "20", "--payload", str(payload),
                 "--interval", "0.05", "--output", str(out), "--sign",
                 "--signKey", key_files["sign_key"], "--signCert", key_files["sign_cert"],
                 "--encrypt", "--encryptKey", key_files["encrypt_key"],
                 "--decryptKey", key_files["decrypt_key"]])

    assert code == 0
    full = json.loads((out / "full_metrics.json").read_text())
    assert full["receiver"]["received_count"] == 20
    assert full["summary"]["payload_size"] == 64
    assert sorted(os.listdir(out)) == ["full_metrics.json", "receiver_snapshots.csv",
                                       "sender_snapshots.csv", "summary_metrics.json"]
    printed = capsys.readouterr().out
    assert "--- Results ---" in printed
    assert "Results saved to" in printed


def test_scenario_output_goes_to_system_temp_dir():
    for scenario in small_payload_scenarios({"SELF_TEST_HOST": "broker"}):
        output = scenario.args[scenario.args.index("--output") + 1]
        assert os.path.dirname(output) == tempfile.gettempdir()
        assert os.path.basename(output).startswith("brokerbench-small-")
