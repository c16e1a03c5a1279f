# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Tests for privilege resolution"""

import os

import pytest

from melody.core import privilege
from melody.core.exceptions import PrivilegeCheckError
from melody.core.privilege import PrivilegeContext, is_elevated, resolve_context


class TestIsElevated:
    def test_posix_root(self, monkeypatch):
        monkeypatch.setattr(privilege.platform, "system", lambda: "Linux")
        monkeypatch.setattr(os, "geteuid", lambda: 0, raising=False)
        assert is_elevated() is True

    def test_posix_regular_user(self, monkeypatch):
        monkeypatch.setattr(privilege.platform, "system", lambda: "Linux")
        monkeypatch.setattr(os, "geteuid", lambda: 1000, raising=False)
        assert is_elevated() is False

    def test_posix_query_failure_is_fatal(self, monkeypatch):
        def broken():
            raise OSError("no uid")

        monkeypatch.setattr(privilege.platform, "system", lambda: "Linux")
        monkeypatch.setattr(os, "geteuid", broken, raising=False)
        with pytest.raises(PrivilegeCheckError):
            is_elevated()

    def test_windows_dispatch(self, monkeypatch):
        monkeypatch.setattr(privilege.platform, "system", lambda: "Windows")
        monkeypatch.setattr(privilege, "_windows_is_admin", lambda: True)
        assert is_elevated() is True


class TestPrivilegeContext:
    def test_current_uses_live_check(self, monkeypatch):
        monkeypatch.setattr(privilege, "is_elevated", lambda: False)
        assert PrivilegeContext.current().elevated is False

        monkeypatch.setattr(privilege, "is_elevated", lambda: True)
        assert PrivilegeContext.current().elevated is True

    def test_fixed_contexts(self):
        assert PrivilegeContext.unprivileged().elevated is False
        assert PrivilegeContext.administrator().elevated is True

    def test_resolve_keeps_explicit_context(self, monkeypatch):
        def fail():
            raise AssertionError("should not query the OS")

        monkeypatch.setattr(privilege, "is_elevated", fail)
        context = PrivilegeContext.administrator()
        assert resolve_context(context) is context

    def test_windows_flag(self):
        assert PrivilegeContext(elevated=False, platform="Windows").is_windows
        assert not PrivilegeContext(elevated=False, platform="Linux").is_windows
