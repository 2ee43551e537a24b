"""Tests for turning task input into TaskSpecs."""

import json
import os
import stat
from pathlib import Path

import pytest

from taskly.config import TaskDescription
from taskly.errors import ErrorCode, ValidationError
from taskly.resolver import (
    CommandResolver,
    MissingKind,
    detect_script_run,
    expand_shortcut,
    read_package_scripts,
    split_command,
)


@pytest.fixture
def package_dir(tmp_path: Path) -> Path:
    """Directory with a package.json and a fake npm executable."""
    scripts = {"build": "tsc", "test:unit": "jest", "test:e2e": "playwright", "lint": "eslint ."}
    (tmp_path / "package.json").write_text(json.dumps({"name": "demo", "scripts": scripts}))

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    npm = bin_dir / "npm"
    npm.write_text("#!/bin/sh\nexit 0\n")
    npm.chmod(npm.stat().st_mode | stat.S_IXUSR)
    return tmp_path


class TestHelpers:
    """Test cases for module level helpers."""

    @pytest.mark.parametrize(
        ("command", "expanded"),
        [
            ("npm:build", "npm run build"),
            ("pnpm:dev", "pnpm run dev"),
            ("bun:test:*", "bun run test:*"),
            ("npm run build", "npm run build"),
            ("make all", "make all"),
        ],
    )
    def test_expand_shortcut(self, command, expanded):
        """Test package manager shortcut expansion."""
        assert expand_shortcut(command) == expanded

    def test_split_command(self):
        """Test POSIX splitting with quotes."""
        assert split_command("grep -r 'two words' src") == ["grep", "-r", "two words", "src"]

    def test_split_command_unbalanced_quotes(self):
        """Test that unbalanced quotes are a validation error."""
        with pytest.raises(ValidationError) as exc_info:
            split_command("echo 'oops")
        assert exc_info.value.code == ErrorCode.INVALID_COMMAND

    def test_detect_script_run(self):
        """Test recognition of "pm run script"."""
        assert detect_script_run(["yarn", "run", "build", "--prod"]) == ("yarn", "build")
        assert detect_script_run(["yarn", "build"]) is None

    def test_read_package_scripts(self, package_dir, tmp_path):
        """Test reading scripts, and None when package.json is absent."""
        assert read_package_scripts(package_dir)["lint"] == "eslint ."
        assert read_package_scripts(tmp_path / "bin") is None


class TestResolve:
    """Test cases for CommandResolver.resolve."""

    def test_string_commands(self):
        """Test ids, indexes and defaults for plain strings."""
        specs = CommandResolver().resolve(["npm run build", "./scripts/serve.sh --port 80"])

        assert [s.id for s in specs] == ["npm-0", "servesh-1"]
        assert [s.index for s in specs] == [0, 1]
        assert specs[0].shell_mode is True
        assert specs[0].command == "npm run build"
        assert specs[0].args == ()

    def test_names_and_colors_by_index(self):
        """Test that names and prefix colors apply by position."""
        resolver = CommandResolver(names=["api", "web"], prefix_colors=["blue"])
        specs = resolver.resolve(["make api", "make web", "make docs"])

        assert [s.id for s in specs] == ["api", "web", "make-2"]
        assert [s.name for s in specs] == ["api", "web", None]
        assert [s.color for s in specs] == ["blue", None, None]

    def test_mapping_and_description_input(self):
        """Test mixed mapping and TaskDescription items."""
        specs = CommandResolver().resolve(
            [
                {"command": "make", "name": "build", "env": {"CI": 1}, "prefixColor": "red", "restartTries": 2},
                TaskDescription(command="pytest", name="test", restart_delay=250),
            ],
        )
        assert specs[0].env == {"CI": "1"}
        assert specs[0].color == "red"
        assert specs[0].restart_tries == 2
        assert specs[1].restart_delay_ms == 250

    def test_default_restart_budget_for_strings(self):
        """Test that resolver defaults apply to plain string commands."""
        specs = CommandResolver(restart_tries=3, restart_delay_ms=100).resolve(["make"])
        assert (specs[0].restart_tries, specs[0].restart_delay_ms) == (3, 100)

    def test_no_shell_splits_arguments(self):
        """Test that shell=False separates executable and arguments."""
        specs = CommandResolver(default_shell=False).resolve(["ls -la '/tmp/my dir'"])
        assert specs[0].command == "ls"
        assert specs[0].args == ("-la", "/tmp/my dir")
        assert specs[0].command_line == "ls -la /tmp/my dir"

    def test_shortcut_expanded(self):
        """Test that shortcuts are expanded during normalization."""
        assert CommandResolver().resolve(["npm:lint"])[0].command == "npm run lint"

    def test_cwd_resolution(self, tmp_path):
        """Test that relative task cwd values resolve against the default cwd."""
        resolver = CommandResolver(cwd=str(tmp_path))
        specs = resolver.resolve(["make", {"command": "make", "cwd": "sub"}, {"command": "make", "cwd": "/abs"}])

        assert specs[0].cwd == str(tmp_path)
        assert specs[1].cwd == os.path.join(str(tmp_path), "sub")
        assert specs[2].cwd == "/abs"

    def test_no_cwd_leaves_none(self):
        """Test that tasks run in the current directory when no cwd is given."""
        assert CommandResolver().resolve(["make"])[0].cwd is None

    def test_empty_task_list(self):
        """Test that zero tasks is a validation error."""
        with pytest.raises(ValidationError) as exc_info:
            CommandResolver().resolve([])
        assert exc_info.value.code == ErrorCode.INVALID_OPTIONS

    def test_empty_command(self):
        """Test that an empty command string is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            CommandResolver().resolve(["  "])
        assert exc_info.value.code == ErrorCode.INVALID_TASK_CONFIG

    def test_duplicate_ids(self):
        """Test that two tasks with the same name are rejected."""
        with pytest.raises(ValidationError, match="Duplicate task id: api"):
            CommandResolver().resolve([{"command": "a", "name": "api"}, {"command": "b", "name": "api"}])

    def test_unsupported_item(self):
        """Test that non-task values are rejected."""
        with pytest.raises(ValidationError, match="Unsupported task type"):
            CommandResolver().resolve([42])


class TestWildcards:
    """Test cases for wildcard script expansion."""

    def test_wildcard_expands_sorted(self, package_dir):
        """Test one task per matching script, sorted by name."""
        specs = CommandResolver(cwd=str(package_dir)).resolve(["npm:test:*"])

        assert [s.command for s in specs] == ["npm run test:e2e", "npm run test:unit"]
        assert [s.id for s in specs] == ["test:e2e", "test:unit"]

    def test_wildcard_name_prefix(self, package_dir):
        """Test that a named wildcard task prefixes the script names."""
        specs = CommandResolver(cwd=str(package_dir)).resolve([{"command": "npm run test:*", "name": "t"}])
        assert [s.name for s in specs] == ["t:test:e2e", "t:test:unit"]

    def test_wildcard_without_matches_unchanged(self, package_dir):
        """Test that a pattern matching nothing is left as is."""
        specs = CommandResolver(cwd=str(package_dir)).resolve(["npm run deploy:*"])
        assert [s.command for s in specs] == ["npm run deploy:*"]


class TestFindMissing:
    """Test cases for CommandResolver.find_missing."""

    def test_existing_command(self):
        """Test that a command on PATH is not reported."""
        resolver = CommandResolver()
        assert resolver.find_missing(resolver.resolve(["sleep 1"])[0]) is None

    def test_missing_command(self):
        """Test that an executable absent from PATH is reported."""
        resolver = CommandResolver()
        missing = resolver.find_missing(resolver.resolve(["taskly-no-such-tool --version"])[0])

        assert missing.kind == MissingKind.COMMAND
        assert missing.reason == "command not found: taskly-no-such-tool"

    def test_missing_command_without_shell(self):
        """Test the check for direct execution."""
        resolver = CommandResolver(default_shell=False)
        assert resolver.find_missing(resolver.resolve(["taskly-no-such-tool"])[0]) is not None

    @pytest.mark.parametrize("command", ["exit 3", "cd build && make", "FOO=1 make", "echo $HOME", "a | b"])
    def test_shell_constructs_not_checked(self, command):
        """Test that builtins, assignments and shell syntax are left to the shell."""
        resolver = CommandResolver()
        assert resolver.find_missing(resolver.resolve([command])[0]) is None

    def test_relative_path_checked_against_cwd(self, tmp_path):
        """Test that ./script paths are resolved in the task cwd."""
        (tmp_path / "run.sh").write_text("#!/bin/sh\n")
        resolver = CommandResolver(cwd=str(tmp_path))

        assert resolver.find_missing(resolver.resolve(["./run.sh"])[0]) is None
        assert resolver.find_missing(resolver.resolve(["./other.sh"])[0]).kind == MissingKind.COMMAND

    def test_missing_script(self, package_dir):
        """Test that an undefined package script is reported."""
        resolver = CommandResolver(cwd=str(package_dir))
        env = {"PATH": str(package_dir / "bin")}
        specs = resolver.resolve(
            [{"command": "npm run build", "env": env}, {"command": "npm run publish", "env": env}],
        )

        assert resolver.find_missing(specs[0]) is None
        missing = resolver.find_missing(specs[1])
        assert missing.kind == MissingKind.SCRIPT
        assert missing.reason == "script not found in package.json: publish"
