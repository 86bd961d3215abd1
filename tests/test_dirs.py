"""Directory probing and fallback order."""

import os
from pathlib import Path

import pytest

import dirs
from dirs import expand_shell_path, find_state_dir, find_workspace_dir, is_dir_usable, is_under


class TestExpandShellPath:
    def test_tilde(self):
        assert expand_shell_path("~/state") == Path.home() / "state"

    def test_home_variable(self):
        """Both $HOME and ${HOME} forms are expanded."""
        home = str(Path.home())
        assert expand_shell_path("$HOME/a") == Path(f"{home}/a")
        assert expand_shell_path("${HOME}/b") == Path(f"{home}/b")

    def test_plain_path_unchanged(self):
        assert expand_shell_path("/data/.openclaw") == Path("/data/.openclaw")


class TestIsUnder:
    def test_nested(self):
        assert is_under(Path("/data/.openclaw/workspace"), Path("/data"))

    def test_same_dir(self):
        assert is_under(Path("/data"), Path("/data"))

    def test_prefix_sibling_is_not_under(self):
        """/database is not inside /data."""
        assert not is_under(Path("/database"), Path("/data"))

    def test_dotdot_normalized(self):
        assert not is_under(Path("/data/../etc"), Path("/data"))


class TestProbe:
    def test_writable_dir(self, tmp_path):
        """A fresh dir is usable and the probe leaves nothing behind."""
        target = tmp_path / "state"
        assert is_dir_usable(target)
        assert list(target.iterdir()) == []

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_read_only_dir(self, tmp_path):
        target = tmp_path / "ro"
        target.mkdir()
        target.chmod(0o500)
        try:
            assert not is_dir_usable(target)
        finally:
            target.chmod(0o700)


class TestFallbackOrder:
    def test_declared_override_wins(self, tmp_path):
        declared = tmp_path / "custom"
        assert find_state_dir(str(declared), data_root=tmp_path / "data") == declared

    def test_data_root_first(self, tmp_path):
        assert find_state_dir("", data_root=tmp_path / "data") == tmp_path / "data" / ".openclaw"

    def test_unusable_override_falls_back(self, tmp_path, monkeypatch):
        """An unusable declared dir falls through to the data root candidate."""
        declared = tmp_path / "nope"
        real_probe = dirs.is_dir_usable
        monkeypatch.setattr(dirs, "is_dir_usable", lambda p: p != declared and real_probe(p))

        assert find_state_dir(str(declared), data_root=tmp_path / "data") == tmp_path / "data" / ".openclaw"

    def test_last_resort_is_pid_tmp_dir(self, tmp_path, monkeypatch):
        monkeypatch.setattr(dirs, "is_dir_usable", lambda p: False)
        monkeypatch.setattr(dirs.tempfile, "gettempdir", lambda: str(tmp_path))

        assert find_state_dir("", data_root=tmp_path / "data") == tmp_path / f"openclaw-{os.getpid()}"

    def test_workspace_defaults_under_state(self, tmp_path):
        state = tmp_path / "state"
        assert find_workspace_dir(state) == state / "workspace"
