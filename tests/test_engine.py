# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Tests for the state engine

Tests:
- Single-item capture and restore
- Template backup/restore with privilege analysis
- Partial failure, on_missing and action filtering
- Encrypted items (secret and machine key)
- Registry items where no registry exists
- Elevated task entry points
"""

import json
import shutil
import sys

import pytest

from melody.core.analyzer import analyze
from melody.core.engine import StateEngine, run_backup_task, run_restore_task
from melody.core.exceptions import ErrorKind, InvalidPathError
from melody.core.paths import DirectoryPath, FilePath, classify
from melody.core.registry_backend import RegistryValue
from melody.core.template import parse_template


def _value(registry, raw_key, name):
    path = classify(raw_key)
    return registry.get_value(path.hive, path.subkey, name)


@pytest.fixture
def settings_file(tmp_path):
    target = tmp_path / "settings.ini"
    target.write_text("[ui]\ntheme=dark\n")
    return target


class TestSingleItems:
    def test_capture_file(self, engine, settings_file, unprivileged):
        outcome = engine.capture_item(str(settings_file), context=unprivileged)

        assert outcome.success, outcome.message
        assert outcome.path == FilePath(str(settings_file))
        assert outcome.details["encrypted"] is False
        assert engine.store.exists(outcome.path)

    def test_restore_file(self, engine, settings_file, unprivileged):
        engine.capture_item(str(settings_file), context=unprivileged)
        settings_file.write_text("changed")

        outcome = engine.restore_item(str(settings_file), context=unprivileged)

        assert outcome.success, outcome.message
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_restore_missing_file_recreates_it(self, engine, settings_file, unprivileged):
        engine.capture_item(str(settings_file), context=unprivileged)
        settings_file.unlink()

        outcome = engine.restore_item(str(settings_file), context=unprivileged)

        assert outcome.success
        assert settings_file.exists()

    def test_restore_directory_by_raw_path(self, engine, sample_dir, unprivileged):
        engine.capture_item(str(sample_dir), context=unprivileged)
        removed = str(sample_dir)
        shutil.rmtree(sample_dir)

        outcome = engine.restore_item(removed, context=unprivileged)

        assert outcome.success, outcome.message
        assert outcome.path == DirectoryPath(removed)
        assert (sample_dir / "settings.json").read_text() == '{"theme": "dark"}'
        assert (sample_dir / "sub" / "profile.ini").exists()
        assert not (sample_dir / "app.lock").exists()

    def test_capture_missing_path(self, engine, tmp_path, unprivileged):
        outcome = engine.capture_item(str(tmp_path / "absent.txt"), context=unprivileged)

        assert not outcome.success
        assert outcome.error_kind == ErrorKind.PATH_NOT_FOUND

    def test_restore_without_snapshot(self, engine, tmp_path, unprivileged):
        outcome = engine.restore_item(str(tmp_path / "never-captured.txt"), context=unprivileged)

        assert not outcome.success
        assert outcome.error_kind == ErrorKind.PATH_NOT_FOUND

    def test_invalid_path_raises_early(self, engine):
        with pytest.raises(InvalidPathError):
            engine.capture_item("relative/settings.ini")

    def test_encrypt_without_secret(self, engine, settings_file, unprivileged):
        outcome = engine.capture_item(str(settings_file), encrypt=True, context=unprivileged)

        assert outcome.error_kind == ErrorKind.SECRET_REQUIRED
        assert not engine.store.exists(FilePath(str(settings_file)))

    def test_encrypted_round_trip(self, engine, settings_file, unprivileged):
        captured = engine.capture_item(str(settings_file), encrypt=True, secret="pw", context=unprivileged)
        document = json.loads(engine.store.path_for(captured.path).read_text())
        assert document["encrypted"] is True
        assert document["encryption"]["algorithm"] == "AES-256-GCM"
        settings_file.write_text("changed")

        wrong = engine.restore_item(str(settings_file), secret="nope", context=unprivileged)
        assert wrong.error_kind == ErrorKind.DECRYPT_ERROR
        assert settings_file.read_text() == "changed"

        restored = engine.restore_item(str(settings_file), secret="pw", context=unprivileged)
        assert restored.success
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_config_exclude_patterns_apply(self, config, registry, coordinator, sample_dir, unprivileged):
        config.security.exclude_patterns = ["*.json"]
        engine = StateEngine(config=config, registry=registry, coordinator=coordinator)

        outcome = engine.capture_item(str(sample_dir), context=unprivileged)
        snapshot = engine.store.load(outcome.path)

        assert outcome.success
        assert "*.json" in snapshot.metadata["exclude_patterns"]
        assert snapshot.metadata["members"] == 2


class TestUserScopedTemplate:
    """User hive plus a user file: nothing needs admin."""

    @pytest.fixture
    def template(self, settings_file):
        return parse_template(
            {
                "metadata": {"name": "Desktop"},
                "registry": [{"name": "Test Key", "path": "HKCU:\\Software\\Test", "recursive": True}],
                "files": [{"name": "Settings", "path": str(settings_file), "type": "file"}],
            }
        )

    def test_no_admin_needed(self, template, unprivileged):
        requirement = analyze(template, unprivileged)
        assert not requirement.requires_admin
        assert not requirement.requires_elevation

    def test_backup_succeeds(self, engine, template, unprivileged):
        report = engine.backup_template(template, context=unprivileged)

        assert report.success
        assert len(report.outcomes) == 2
        assert [o.details["item"] for o in report.outcomes] == ["Test Key", "Settings"]
        assert len(engine.store.list_snapshots()) == 2

    def test_restore_round_trip(self, engine, registry, template, settings_file, unprivileged):
        engine.backup_template(template, context=unprivileged)
        path = classify("HKCU:\\Software\\Test\\Child")
        registry.set_value(path.hive, path.subkey, RegistryValue("Paths", "REG_MULTI_SZ", ["changed"]))
        settings_file.write_text("changed")

        report = engine.restore_template(template, context=unprivileged)

        assert report.success
        assert _value(registry, "HKCU:\\Software\\Test\\Child", "Paths").data == ("a", "b")
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_second_restore_is_noop(self, engine, registry, template, unprivileged):
        engine.backup_template(template, context=unprivileged)
        engine.restore_template(template, context=unprivileged)
        writes = registry.writes

        report = engine.restore_template(template, context=unprivileged)

        assert report.success
        assert registry.writes == writes
        assert all(o.skipped for o in report.outcomes)

    def test_report_dict(self, engine, template, unprivileged):
        data = engine.backup_template(template, context=unprivileged).to_dict()

        assert data["template"] == "Desktop"
        assert data["operation"] == "backup"
        assert data["summary"] == {"total": 2, "failed": 0, "skipped": 0}
        json.dumps(data)


class TestMachineScopedTemplate:
    """Machine hive from an unprivileged process."""

    @pytest.fixture
    def template(self):
        return parse_template(
            {
                "metadata": {"name": "System"},
                "registry": [{"name": "System Key", "path": "HKLM:\\SOFTWARE\\Test"}],
            }
        )

    def test_requires_elevation(self, template, unprivileged, admin):
        requirement = analyze(template, unprivileged)
        assert requirement.requires_admin
        assert requirement.requires_elevation
        assert requirement.reasons[0].target == "HKLM:\\SOFTWARE\\Test"

        assert not analyze(template, admin).requires_elevation

    def test_backup_reads_without_admin(self, engine, template, unprivileged):
        report = engine.backup_template(template, context=unprivileged)
        assert report.success

    def test_restore_refused_without_admin(self, engine, registry, template, unprivileged):
        engine.backup_template(template, context=unprivileged)
        path = classify("HKLM:\\SOFTWARE\\Test")
        registry.set_value(path.hive, path.subkey, RegistryValue("Version", "REG_SZ", "2.0"))
        writes = registry.writes

        report = engine.restore_template(template, context=unprivileged)

        assert not report.success
        assert report.privilege_refused
        assert report.outcomes[0].error_kind == ErrorKind.PRIVILEGE_REQUIRED
        assert registry.writes == writes
        assert _value(registry, "HKLM:\\SOFTWARE\\Test", "Version").data == "2.0"

    def test_restore_as_admin(self, engine, registry, template, unprivileged, admin):
        engine.backup_template(template, context=unprivileged)
        path = classify("HKLM:\\SOFTWARE\\Test")
        registry.set_value(path.hive, path.subkey, RegistryValue("Version", "REG_SZ", "2.0"))

        report = engine.restore_template(template, context=admin)

        assert report.success
        assert _value(registry, "HKLM:\\SOFTWARE\\Test", "Version").data == "1.0"


class TestPartialFailure:
    def test_denied_item_does_not_stop_run(self, engine, registry, settings_file, unprivileged):
        registry.deny("HKCU:\\Software\\Test")
        template = parse_template(
            {
                "registry": [{"name": "Locked", "path": "HKCU:\\Software\\Test"}],
                "files": [{"name": "Settings", "path": str(settings_file)}],
            }
        )

        report = engine.backup_template(template, context=unprivileged)

        assert not report.success
        assert not report.privilege_refused
        assert report.outcomes[0].error_kind == ErrorKind.ACCESS_DENIED
        assert report.outcomes[1].success

    def test_on_missing_skip(self, engine, tmp_path, unprivileged):
        template = parse_template({"files": [{"name": "Optional", "path": str(tmp_path / "absent.txt")}]})

        report = engine.backup_template(template, context=unprivileged)

        assert report.success
        assert report.outcomes[0].skipped
        assert report.outcomes[0].error_kind == ErrorKind.PATH_NOT_FOUND

    def test_on_missing_fail(self, engine, tmp_path, unprivileged):
        template = parse_template(
            {"files": [{"name": "Required", "path": str(tmp_path / "absent.txt"), "on_missing": "fail"}]}
        )

        report = engine.backup_template(template, context=unprivileged)

        assert not report.success
        assert report.outcomes[0].error_kind == ErrorKind.PATH_NOT_FOUND

    def test_action_filtering(self, engine, settings_file, unprivileged):
        template = parse_template(
            {"files": [{"name": "Restore Only", "path": str(settings_file), "action": "restore"}]}
        )

        report = engine.backup_template(template, context=unprivileged)

        assert report.success
        assert report.outcomes[0].skipped
        assert engine.store.list_snapshots() == []


class TestEncryptedTemplates:
    @pytest.fixture
    def secret_template(self, settings_file):
        return parse_template({"files": [{"name": "Secret", "path": str(settings_file), "encrypt": True}]})

    def test_secret_required(self, engine, secret_template, unprivileged):
        report = engine.backup_template(secret_template, context=unprivileged)

        assert not report.success
        assert report.outcomes[0].error_kind == ErrorKind.SECRET_REQUIRED

    def test_secret_round_trip(self, engine, secret_template, settings_file, unprivileged):
        assert engine.backup_template(secret_template, secret="pw", context=unprivileged).success
        settings_file.write_text("changed")

        report = engine.restore_template(secret_template, secret="pw", context=unprivileged)

        assert report.success
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_restore_without_secret(self, engine, secret_template, unprivileged):
        engine.backup_template(secret_template, secret="pw", context=unprivileged)

        report = engine.restore_template(secret_template, context=unprivileged)

        assert report.outcomes[0].error_kind == ErrorKind.SECRET_REQUIRED

    def test_machine_key(self, engine, config, settings_file, unprivileged):
        template = parse_template(
            {
                "files": [{"name": "Secret", "path": str(settings_file), "encrypt": True}],
                "encryption": {"key_source": "machine"},
            }
        )

        assert engine.backup_template(template, context=unprivileged).success
        assert config.paths.key_file.exists()
        settings_file.write_text("changed")

        assert engine.restore_template(template, context=unprivileged).success
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_machine_key_missing_on_restore(self, engine, config, settings_file, unprivileged):
        template = parse_template(
            {
                "files": [{"name": "Secret", "path": str(settings_file), "encrypt": True}],
                "encryption": {"key_source": "machine"},
            }
        )
        engine.backup_template(template, context=unprivileged)
        config.paths.key_file.unlink()

        report = engine.restore_template(template, context=unprivileged)

        assert report.outcomes[0].error_kind == ErrorKind.SECRET_REQUIRED
        assert not config.paths.key_file.exists()

    def test_machine_key_disabled(self, engine, config, settings_file, unprivileged):
        config.security.machine_key = False
        template = parse_template(
            {
                "files": [{"name": "Secret", "path": str(settings_file), "encrypt": True}],
                "encryption": {"key_source": "machine"},
            }
        )

        report = engine.backup_template(template, context=unprivileged)

        assert report.outcomes[0].error_kind == ErrorKind.SECRET_REQUIRED

    def test_corrupt_machine_key_does_not_stop_run(self, engine, config, settings_file, tmp_path, unprivileged):
        config.paths.key_file.parent.mkdir(parents=True, exist_ok=True)
        config.paths.key_file.write_text("abc")
        plain = tmp_path / "plain.txt"
        plain.write_text("plain")
        template = parse_template(
            {
                "files": [
                    {"name": "Secret", "path": str(settings_file), "encrypt": True},
                    {"name": "Plain", "path": str(plain)},
                ],
                "encryption": {"key_source": "machine"},
            }
        )

        report = engine.backup_template(template, context=unprivileged)

        assert report.outcomes[0].error_kind == ErrorKind.SECRET_REQUIRED
        assert report.outcomes[1].success
        assert engine.store.exists(FilePath(str(plain)))


@pytest.mark.skipif(sys.platform == "win32", reason="Windows has a real registry")
class TestMissingRegistry:
    def test_restore_reports_io_failure(self, config, registry, coordinator, unprivileged):
        path = classify("HKCU:\\Software\\Test")
        seeded = StateEngine(config=config, registry=registry, coordinator=coordinator)
        assert seeded.capture_item(path, context=unprivileged).success

        outcome = StateEngine(config=config, coordinator=coordinator).restore_item(path, context=unprivileged)

        assert not outcome.success
        assert outcome.error_kind == ErrorKind.IO_FAILURE
        assert "unavailable" in outcome.message

    def test_backup_is_not_skipped_as_missing(self, config, coordinator, unprivileged):
        template = parse_template(
            {"registry": [{"name": "Test Key", "path": "HKCU:\\Software\\Test", "on_missing": "skip"}]}
        )

        report = StateEngine(config=config, coordinator=coordinator).backup_template(template, context=unprivileged)

        assert not report.success
        assert report.outcomes[0].error_kind == ErrorKind.IO_FAILURE


class TestTaskEntryPoints:
    def test_backup_and_restore_tasks(self, tmp_path, settings_file):
        template = tmp_path / "app.yaml"
        template.write_text(
            "metadata:\n  name: App\nfiles:\n"
            f"  - name: Settings\n    path: '{settings_file.as_posix()}'\n    type: file\n"
        )
        state_dir = tmp_path / "state"

        report = run_backup_task(str(template), str(state_dir))
        assert report["success"] is True
        assert report["summary"]["total"] == 1

        settings_file.write_text("changed")
        report = run_restore_task(str(template), str(state_dir))
        assert report["success"] is True
        assert settings_file.read_text() == "[ui]\ntheme=dark\n"

    def test_wrong_secret_in_report(self, tmp_path, settings_file):
        template = tmp_path / "app.yaml"
        template.write_text(
            f"files:\n  - name: Settings\n    path: '{settings_file.as_posix()}'\n    encrypt: true\n"
        )
        state_dir = tmp_path / "state"
        run_backup_task(str(template), str(state_dir), secret="pw")

        report = run_restore_task(str(template), str(state_dir), secret="wrong")

        outcome = report["outcomes"][0]
        assert outcome["error_kind"] == ErrorKind.DECRYPT_ERROR.value
        assert outcome["details"]["item"] == "Settings"
        assert report["success"] is False
