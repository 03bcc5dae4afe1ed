"""Tests for commandline parsing and exit codes"""

import pytest
from unittest.mock import patch
from buildemacs import (
    EmacsBuilder,
    PlatformInfo,
    RunMode,
    SudoKeepAlive,
    attach_option_values,
    build_parser,
    main,
    resolve_mode,
)


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    """keep main() away from the root logger and the host webkit"""
    monkeypatch.setattr("buildemacs.SKIP_PROMPT", "yes")
    with patch("buildemacs.setup_logging"), \
         patch.object(PlatformInfo, "xwidgets_supported", return_value=False):
        yield


@pytest.fixture
def keepalive():
    with patch.object(SudoKeepAlive, "start") as mock_start, \
         patch.object(SudoKeepAlive, "stop") as mock_stop:
        yield mock_start, mock_stop


class TestParser:

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.interactive is False
        assert args.yes is False
        assert args.dry_run is False
        assert args.steps is None
        assert args.skip is None
        assert args.configure_options is None
        assert args.url == "https://git.savannah.gnu.org/git/emacs.git"

    def test_configure_options_forms(self):
        parser = build_parser()
        assert parser.parse_args(["-c=--without-pgtk"]).configure_options == "--without-pgtk"
        args = parser.parse_args(["--configure-options=--with-native-compilation=no,--without-pgtk"])
        assert args.configure_options == "--with-native-compilation=no,--without-pgtk"

    def test_configure_options_separate_value(self):
        argv = attach_option_values(["-c", "--with-native-compilation=no,--without-pgtk", "-d"])
        assert argv == ["-c=--with-native-compilation=no,--without-pgtk", "-d"]
        args = build_parser().parse_args(argv)
        assert args.configure_options == "--with-native-compilation=no,--without-pgtk"
        assert args.dry_run is True
        long_form = attach_option_values(["--configure-options", "--without-pgtk"])
        assert build_parser().parse_args(long_form).configure_options == "--without-pgtk"

    def test_attached_values_untouched(self):
        argv = ["-c=--without-pgtk", "-s", "pull_emacs"]
        assert attach_option_values(argv) == argv

    @pytest.mark.parametrize("argv", [
        ["-i", "-y"],
        ["-s", "pull_emacs", "-n", "install_deps"],
        ["--jobs", "many"],
    ])
    def test_usage_errors(self, argv):
        with pytest.raises(SystemExit) as excinfo:
            main(argv)
        assert excinfo.value.code == 2

    def test_jobs_must_be_positive(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["-j", "0"])
        assert excinfo.value.code == 2

    def test_help_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["-h"])
        assert excinfo.value.code == 0
        assert "install_deps" in capsys.readouterr().out


class TestResolveMode:

    def test_default_non_interactive(self):
        assert resolve_mode(build_parser().parse_args([])) is RunMode.NON_INTERACTIVE

    def test_flags(self):
        parser = build_parser()
        assert resolve_mode(parser.parse_args(["-i"])) is RunMode.INTERACTIVE
        assert resolve_mode(parser.parse_args(["-y"])) is RunMode.NON_INTERACTIVE
        assert resolve_mode(parser.parse_args(["-i", "-d"])) is RunMode.DRY_RUN

    def test_skip_prompt_env(self, monkeypatch):
        monkeypatch.setattr("buildemacs.SKIP_PROMPT", "no")
        parser = build_parser()
        assert resolve_mode(parser.parse_args([])) is RunMode.INTERACTIVE
        assert resolve_mode(parser.parse_args(["-y"])) is RunMode.NON_INTERACTIVE


class TestMain:

    def test_list_steps(self, capsys):
        assert main(["-l"]) == 0
        out = capsys.readouterr().out
        assert out.splitlines()[0].startswith("install_deps")
        assert "copy_emacs_icon" in out

    def test_unknown_step_fails(self, keepalive):
        mock_start, _ = keepalive
        with patch.object(EmacsBuilder, "install_deps") as mock_install:
            assert main(["-s", "install_deps,no_such_step"]) == 1
            mock_install.assert_not_called()
        mock_start.assert_not_called()

    def test_unknown_skip_ignored(self, tmp_path, keepalive):
        with patch.object(EmacsBuilder, "steps", return_value=[]):
            assert main(["-p", str(tmp_path), "-n", "no_such_step"]) == 0

    def test_selected_steps_run(self, tmp_path, keepalive):
        mock_start, mock_stop = keepalive
        with patch.object(EmacsBuilder, "kill_emacs") as mock_kill, \
             patch.object(EmacsBuilder, "install_deps") as mock_install:
            assert main(["-p", str(tmp_path), "-s", "kill_emacs"]) == 0
            mock_kill.assert_called_once_with()
            mock_install.assert_not_called()
        mock_start.assert_called_once()
        mock_stop.assert_called_once()

    def test_missing_source_fails(self, tmp_path, keepalive):
        _, mock_stop = keepalive
        with patch.object(EmacsBuilder, "cmd") as mock_cmd:
            code = main(["-p", str(tmp_path / "missing"), "-s", "build_emacs,install_emacs"])
        assert code == 1
        mock_cmd.assert_not_called()
        mock_stop.assert_called_once()

    def test_interrupt(self, tmp_path, keepalive):
        _, mock_stop = keepalive
        with patch.object(EmacsBuilder, "kill_emacs", side_effect=KeyboardInterrupt):
            assert main(["-p", str(tmp_path), "-s", "kill_emacs"]) == 130
        mock_stop.assert_called_once()

    def test_configure_options_separate_value(self, tmp_path, capsys):
        code = main(["-d", "-p", str(tmp_path / "emacs"),
                     "-c", "--with-native-compilation=no,--without-pgtk"])
        assert code == 0
        out = capsys.readouterr().out
        assert "--with-native-compilation=no" in out
        assert "--with-native-compilation=aot" not in out

    def test_closed_stdin(self, tmp_path, keepalive):
        _, mock_stop = keepalive
        with patch("buildemacs.confirm", side_effect=EOFError), \
             patch.object(EmacsBuilder, "kill_emacs") as mock_kill:
            assert main(["-i", "-p", str(tmp_path), "-s", "kill_emacs"]) == 1
            mock_kill.assert_not_called()
        mock_stop.assert_called_once()

    def test_xwidgets_step_unavailable(self, keepalive, caplog):
        assert main(["-s", "fix_emacs_xwidgets"]) == 1
        assert "unknown step(s): fix_emacs_xwidgets" in caplog.text
        assert "fix_emacs_xwidgets is unavailable" in caplog.text
        keepalive[0].assert_not_called()

    def test_help_marks_xwidgets_conditional(self, capsys):
        with pytest.raises(SystemExit):
            main(["-h"])
        assert "fix_emacs_xwidgets (only when" in capsys.readouterr().out
