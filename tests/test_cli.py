# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for the melody command line"""

import json

import pytest
from click.testing import CliRunner

from melody import __version__
from melody.cli import EXIT_FAILURE, EXIT_OK, EXIT_PRIVILEGE, cli


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setattr("melody.core.privilege.is_elevated", lambda: False)
    # Keep log lines out of the captured output
    monkeypatch.setenv("MELODY_LOG_LEVEL", "CRITICAL")
    return CliRunner()


@pytest.fixture
def settings_file(tmp_path):
    target = tmp_path / "settings.ini"
    target.write_text("[ui]\ntheme=dark\n")
    return target


@pytest.fixture
def user_template(tmp_path, settings_file):
    template = tmp_path / "user.yaml"
    template.write_text(
        "metadata:\n"
        "  name: User Settings\n"
        "files:\n"
        "  - name: Settings\n"
        f"    path: '{settings_file.as_posix()}'\n"
        "    type: file\n"
    )
    return template


@pytest.fixture
def machine_template(tmp_path):
    template = tmp_path / "machine.yaml"
    template.write_text(
        "metadata:\n"
        "  name: System Settings\n"
        "registry:\n"
        "  - name: System Key\n"
        "    path: 'HKLM:\\SOFTWARE\\Melody'\n"
        "    type: key\n"
    )
    return template


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


class TestAnalyze:
    def test_user_template(self, runner, user_template):
        result = runner.invoke(cli, ["analyze", str(user_template)])

        assert result.exit_code == EXIT_OK
        assert "Requires admin: no" in result.output

    def test_machine_template_json(self, runner, machine_template):
        result = runner.invoke(cli, ["analyze", str(machine_template), "--json"])

        assert result.exit_code == EXIT_OK
        data = json.loads(result.output)
        assert data["template"] == "System Settings"
        assert data["requires_admin"] is True
        assert data["requires_elevation"] is True
        assert data["reasons"][0]["tag"] == "machine-hive"

    def test_invalid_template(self, runner, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("registry:\n  - name: Bad\n    path: 'relative/path'\n")

        result = runner.invoke(cli, ["analyze", str(broken)])

        assert result.exit_code == EXIT_FAILURE


class TestBackupRestore:
    def test_backup_then_restore(self, runner, user_template, settings_file, state_dir):
        result = runner.invoke(cli, ["backup", str(user_template), "--state-dir", str(state_dir)])
        assert result.exit_code == EXIT_OK, result.output
        assert "[+] Settings" in result.output
        assert len(list(state_dir.glob("*.json"))) == 1

        settings_file.write_text("changed")
        result = runner.invoke(cli, ["restore", str(user_template), "--state-dir", str(state_dir)])

        assert result.exit_code == EXIT_OK, result.output
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_json_report(self, runner, user_template, state_dir):
        result = runner.invoke(cli, ["backup", str(user_template), "--state-dir", str(state_dir), "--json"])

        assert result.exit_code == EXIT_OK
        report = json.loads(result.output)
        assert report["success"] is True
        assert report["summary"]["total"] == 1
        assert report["outcomes"][0]["details"]["item"] == "Settings"

    def test_restore_without_snapshot_fails(self, runner, tmp_path, state_dir):
        template = tmp_path / "strict.yaml"
        template.write_text(
            f"files:\n  - name: Strict\n    path: '{(tmp_path / 'gone.txt').as_posix()}'\n    on_missing: fail\n"
        )

        result = runner.invoke(cli, ["restore", str(template), "--state-dir", str(state_dir)])

        assert result.exit_code == EXIT_FAILURE
        assert "[-] Strict" in result.output

    def test_what_if_runs_nothing(self, runner, user_template, state_dir):
        result = runner.invoke(cli, ["backup", str(user_template), "--state-dir", str(state_dir), "--what-if"])

        assert result.exit_code == EXIT_OK
        assert "What-if" in result.output
        assert not state_dir.exists()


class TestPrivilege:
    def test_machine_restore_refused(self, runner, machine_template, state_dir):
        result = runner.invoke(cli, ["restore", str(machine_template), "--state-dir", str(state_dir)])

        assert result.exit_code == EXIT_PRIVILEGE
        assert "PrivilegeRequired" in result.output
        assert "--elevate" in result.output

    def test_machine_restore_json(self, runner, machine_template, state_dir):
        result = runner.invoke(cli, ["restore", str(machine_template), "--state-dir", str(state_dir), "--json"])

        assert result.exit_code == EXIT_PRIVILEGE
        report = json.loads(result.output)
        assert report["outcomes"][0]["error_kind"] == "PrivilegeRequired"

    def test_elevate_without_prompt(self, runner, machine_template, state_dir):
        result = runner.invoke(
            cli,
            ["restore", str(machine_template), "--state-dir", str(state_dir), "--elevate", "--no-prompt", "--json"],
        )

        assert result.exit_code == EXIT_PRIVILEGE
        outcome = json.loads(result.output)
        assert outcome["error_kind"] == "ElevationRequired"


class TestSecrets:
    @pytest.fixture
    def secret_template(self, tmp_path, settings_file):
        template = tmp_path / "secret.yaml"
        template.write_text(
            f"files:\n  - name: Secret\n    path: '{settings_file.as_posix()}'\n    encrypt: true\n"
        )
        return template

    def test_secret_from_env(self, runner, secret_template, settings_file, state_dir, monkeypatch):
        monkeypatch.setenv("MELODY_TEST_SECRET", "pw")
        args = ["--state-dir", str(state_dir), "--secret-env", "MELODY_TEST_SECRET"]

        assert runner.invoke(cli, ["backup", str(secret_template), *args]).exit_code == EXIT_OK
        settings_file.write_text("changed")
        assert runner.invoke(cli, ["restore", str(secret_template), *args]).exit_code == EXIT_OK
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_ask_secret(self, runner, secret_template, state_dir):
        result = runner.invoke(
            cli, ["backup", str(secret_template), "--state-dir", str(state_dir), "--ask-secret"], input="pw\n"
        )
        assert result.exit_code == EXIT_OK, result.output

    def test_missing_secret(self, runner, secret_template, state_dir):
        result = runner.invoke(cli, ["backup", str(secret_template), "--state-dir", str(state_dir)])

        assert result.exit_code == EXIT_FAILURE
        assert "SecretRequired" in result.output

    def test_unset_secret_env(self, runner, secret_template, state_dir):
        result = runner.invoke(
            cli, ["backup", str(secret_template), "--state-dir", str(state_dir), "--secret-env", "MELODY_UNSET_VAR"]
        )

        assert result.exit_code != EXIT_OK
        assert "MELODY_UNSET_VAR" in result.output


class TestInspect:
    def test_inspect_snapshot(self, runner, user_template, state_dir):
        runner.invoke(cli, ["backup", str(user_template), "--state-dir", str(state_dir)])
        snapshot_file = next(state_dir.glob("*.json"))

        result = runner.invoke(cli, ["inspect", str(snapshot_file), "--json"])

        assert result.exit_code == EXIT_OK
        info = json.loads(result.output)
        assert info["kind"] == "file"
        assert info["hash_ok"] is True
        assert info["encrypted"] is False
        assert "payload" not in info

    def test_inspect_tampered(self, runner, user_template, state_dir):
        runner.invoke(cli, ["backup", str(user_template), "--state-dir", str(state_dir)])
        snapshot_file = next(state_dir.glob("*.json"))
        document = json.loads(snapshot_file.read_text())
        document["payload_hash"] = "sha256:" + "0" * 64
        snapshot_file.write_text(json.dumps(document))

        result = runner.invoke(cli, ["inspect", str(snapshot_file)])

        assert result.exit_code == EXIT_FAILURE

    def test_inspect_garbage(self, runner, tmp_path):
        garbage = tmp_path / "garbage.json"
        garbage.write_text("nope")

        result = runner.invoke(cli, ["inspect", str(garbage)])

        assert result.exit_code == EXIT_FAILURE


class TestGlobalOptions:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert __version__ in result.output

    def test_whoami(self, runner):
        result = runner.invoke(cli, ["whoami", "--json"])

        assert result.exit_code == EXIT_OK
        info = json.loads(result.output)
        assert info["elevated"] is False
        assert "launcher" in info

    def test_whoami_configured_launcher(self, runner, monkeypatch):
        monkeypatch.setenv("MELODY_LAUNCHER", "direct")
        result = runner.invoke(cli, ["whoami"])

        assert "Launcher: direct" in result.output

    def test_bad_config_file(self, runner, tmp_path):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("security:\n  kdf_iterations: 0\n")

        result = runner.invoke(cli, ["--config", str(config_file), "whoami"])

        assert result.exit_code == EXIT_FAILURE
        assert "Config error" in result.output
