"""
Configuration renderer — typed ``{{NAME}}`` templating with validation.

Rendering fails loudly (UnresolvedPlaceholder) instead of emitting a
file with stray placeholders.  Installing a rendered file goes through a
temporary path in the destination directory:

    write temp → chmod → self-test(temp) → backup old → os.replace

so a partially written or rejected config is never visible at the
final path.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.adapters.shell.filesystem import backup_path, write_temp_beside
from oqs_installer.core.errors import (
    CommandError,
    ConfigError,
    ConfigValidationFailed,
    UnresolvedPlaceholder,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

# Token replaced by the file under test in self-test commands
PATH_TOKEN = "{path}"

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "data" / "templates"


def find_placeholders(template: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render_template(template: str, values: Mapping[str, object]) -> str:
    """Substitute every ``{{NAME}}`` with ``str(values[NAME])``.

    Raises:
        UnresolvedPlaceholder: Names used in the template but not supplied.
    """
    missing = [name for name in find_placeholders(template) if values.get(name) is None]
    if missing:
        raise UnresolvedPlaceholder(missing)

    return PLACEHOLDER_RE.sub(lambda m: _format_value(values[m.group(1)]), template)


def _format_value(value: object) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    return str(value)


def parse_directives(text: str) -> dict[str, str]:
    """Parse ``Keyword value`` / ``Key=value`` lines into a mapping.

    Blank lines, ``#`` comments and ``[Section]`` headers are skipped.
    Later keys win.  Indented lines (e.g. under ``Host``) are included.
    """
    directives: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or (line.startswith("[") and line.endswith("]")):
            continue
        if "=" in line.split(None, 1)[0]:
            key, _, value = line.partition("=")
        else:
            key, _, value = line.partition(" ")
        directives[key.strip()] = value.strip()
    return directives


def load_template(name: str, override_dir: Path | None = None) -> str:
    """Read a packaged template; ``override_dir`` may shadow it."""
    candidates = []
    if override_dir is not None:
        candidates.append(override_dir / name)
    candidates.append(TEMPLATES_DIR / name)

    for path in candidates:
        if path.is_file():
            logger.debug("Using template %s", path)
            return path.read_text(encoding="utf-8")

    raise ConfigError(f"Template not found: {name}")


def _self_test_argv(self_test: Sequence[str], path: Path) -> list[str]:
    return [str(path) if arg == PATH_TOKEN else arg.replace(PATH_TOKEN, str(path))
            for arg in self_test]


def install_rendered(
    text: str,
    dest: Path,
    *,
    runner: CommandRunner,
    mode: int = 0o644,
    self_test: Sequence[str] | None = None,
    backup_dir: Path | None = None,
    timeout: float | None = 60.0,
) -> Path | None:
    """Atomically install rendered text at ``dest``.

    Args:
        text: Rendered file content.
        dest: Final path.
        runner: Runs the self-test command.
        mode: Permission bits of the final file.
        self_test: Checker argv; ``{path}`` is replaced with the file
            under test (e.g. ``["sshd", "-t", "-f", "{path}"]``).
        backup_dir: Where to keep a copy of any existing ``dest``.

    Returns:
        Backup path of the previous file, or None.

    Raises:
        ConfigValidationFailed: The checker exited non-zero.
    """
    tmp = write_temp_beside(dest, text, mode)
    try:
        if self_test:
            argv = _self_test_argv(self_test, tmp)
            try:
                runner.run(argv, timeout=timeout, label=f"self-test {dest.name}")
            except CommandError as e:
                raise ConfigValidationFailed(
                    f"{dest.name} rejected by {argv[0]}: {e.message}", output=e.output
                ) from e

        backup = backup_path(dest, backup_dir=backup_dir) if dest.exists() else None
        os.replace(tmp, dest)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    logger.info("Installed %s (mode %o)", dest, mode)
    return backup


def render_to_file(
    template_name: str,
    values: Mapping[str, object],
    dest: Path,
    *,
    runner: CommandRunner,
    mode: int = 0o644,
    self_test: Sequence[str] | None = None,
    backup_dir: Path | None = None,
    template_dir: Path | None = None,
) -> Path | None:
    """load_template + render_template + install_rendered."""
    text = render_template(load_template(template_name, template_dir), values)
    return install_rendered(
        text,
        dest,
        runner=runner,
        mode=mode,
        self_test=self_test,
        backup_dir=backup_dir,
    )
