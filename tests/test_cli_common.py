"""Tests for CLI common utilities and the dispatcher."""

import argparse
import logging
from unittest import mock

import pytest

from nas_backup_agent import __logger__, __version__
from nas_backup_agent.cli.common import add_verbosity_args, get_log_level, load_cli_config
from nas_backup_agent.cli.dispatcher import create_subcommand_parser, main
from nas_backup_agent.config import loader


class TestAddVerbosityArgs:
    """Tests for add_verbosity_args function."""

    def test_adds_verbose(self):
        """Test that --verbose is added."""
        parser = argparse.ArgumentParser()
        add_verbosity_args(parser)
        args = parser.parse_args(["--verbose"])
        assert args.verbose is True

    def test_adds_quiet(self):
        """Test that --quiet is added."""
        parser = argparse.ArgumentParser()
        add_verbosity_args(parser)
        args = parser.parse_args(["--quiet"])
        assert args.quiet is True

    def test_adds_debug(self):
        """Test that --debug is added."""
        parser = argparse.ArgumentParser()
        add_verbosity_args(parser)
        args = parser.parse_args(["--debug"])
        assert args.debug is True


class TestGetLogLevel:
    """Tests for get_log_level function."""

    def test_default_is_info(self):
        """Test default log level is INFO."""
        args = argparse.Namespace(verbose=False, quiet=False, debug=False)
        assert get_log_level(args) == "INFO"

    def test_debug_wins(self):
        """Test --debug takes precedence over --quiet."""
        args = argparse.Namespace(verbose=False, quiet=True, debug=True)
        assert get_log_level(args) == "DEBUG"

    def test_quiet(self):
        """Test --quiet gives WARNING."""
        args = argparse.Namespace(verbose=False, quiet=True, debug=False)
        assert get_log_level(args) == "WARNING"

    def test_verbose(self):
        """Test --verbose gives DEBUG."""
        args = argparse.Namespace(verbose=True, quiet=False, debug=False)
        assert get_log_level(args) == "DEBUG"

    def test_missing_attributes(self):
        """Test namespaces without verbosity flags default to INFO."""
        assert get_log_level(argparse.Namespace()) == "INFO"


class TestCreateLogger:
    """Tests for console logger setup."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        package_logger = logging.getLogger(__logger__.PACKAGE_LOGGER)
        handlers, level, package_level = root.handlers[:], root.level, package_logger.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        package_logger.setLevel(package_level)

    def test_console_keeps_quiet_level(self):
        """Test the console handler filters INFO after a job lowers the logger."""
        __logger__.create_logger(False, level="WARNING")
        handler = __logger__.rich_handler
        assert handler.level == logging.WARNING

        package_logger = logging.getLogger(__logger__.PACKAGE_LOGGER)
        package_logger.setLevel(logging.INFO)
        with mock.patch.object(handler, "emit") as emit:
            package_logger.info("Capturing partition sda1")
            package_logger.warning("EFI capture failed")

        assert [c.args[0].getMessage() for c in emit.call_args_list] == ["EFI capture failed"]

    def test_level_name(self):
        """Test level names are accepted in any case."""
        __logger__.create_logger(True, level="debug")
        assert __logger__.rich_handler.level == logging.DEBUG
        assert logging.getLogger(__logger__.PACKAGE_LOGGER).level == logging.DEBUG


class TestLoadCliConfig:
    """Tests for load_cli_config function."""

    def test_loads_explicit_config(self, config_file):
        """Test the -c path is used."""
        config = load_cli_config(argparse.Namespace(config=str(config_file)))
        assert config.target.address == "192.168.1.10"

    def test_no_config_found(self, tmp_path, monkeypatch, capsys):
        """Test a helpful message when no configuration exists."""
        monkeypatch.setattr(loader, "CONFIG_PATHS", [tmp_path / "missing.toml"])

        assert load_cli_config(argparse.Namespace(config=None)) is None
        assert "nas-backup-agent config init" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path):
        """Test configuration errors give None."""
        path = tmp_path / "config.toml"
        path.write_text("[nonsense]\n")
        assert load_cli_config(argparse.Namespace(config=str(path))) is None


class TestDispatcher:
    """Tests for argument parsing and routing."""

    def test_subcommands(self):
        """Test every subcommand parses."""
        parser = create_subcommand_parser()

        assert parser.parse_args(["run"]).command == "run"
        assert parser.parse_args(["status", "-n", "3"]).limit == 3
        assert parser.parse_args(["disks", "--json"]).json is True
        assert parser.parse_args(["config", "init"]).config_action == "init"
        assert parser.parse_args(["worker", "--job", "/tmp/j.json"]).job == "/tmp/j.json"

    def test_run_options(self):
        """Test run overrides are repeatable."""
        args = create_subcommand_parser().parse_args(
            ["-c", "agent.toml", "run", "--kind", "files", "--path", "/a", "--path", "/b"]
        )
        assert args.config == "agent.toml"
        assert args.kind == "files"
        assert args.path == ["/a", "/b"]

    def test_invalid_kind(self):
        """Test unknown backup kinds are rejected by the parser."""
        with pytest.raises(SystemExit):
            create_subcommand_parser().parse_args(["run", "--kind", "differential"])

    def test_worker_requires_job(self):
        """Test the worker command needs its job file."""
        with pytest.raises(SystemExit):
            create_subcommand_parser().parse_args(["worker"])

    def test_version(self, capsys):
        """Test --version prints the version."""
        assert main(["--version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        """Test running without a command fails."""
        assert main([]) == 1
        assert "No command specified" in capsys.readouterr().out
