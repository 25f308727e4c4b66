"""
Project name detection.

Derives the project key for a scanned root from the first language manifest
that names the project, falling back to the directory name.
"""

from __future__ import annotations

import json
import re
import tomllib
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

_QUOTED = re.compile(r"""["']([^"']+)["']""")


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _from_pyproject(root: Path) -> str | None:
    content = _read(root / "pyproject.toml")
    if content is None:
        return None
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError as e:
        logger.debug("Unparseable pyproject.toml", root=str(root), error=str(e))
        return None
    name = data.get("project", {}).get("name") or data.get("tool", {}).get("poetry", {}).get("name")
    return name if isinstance(name, str) else None


def _from_setup_py(root: Path) -> str | None:
    content = _read(root / "setup.py")
    if content is None:
        return None
    m = re.search(r"""\bname\s*=\s*["']([^"']+)["']""", content)
    return m.group(1) if m else None


def _from_cargo(root: Path) -> str | None:
    content = _read(root / "Cargo.toml")
    if content is None:
        return None
    try:
        data = tomllib.loads(content)
    except tomllib.TOMLDecodeError:
        return None
    name = data.get("package", {}).get("name")
    return name if isinstance(name, str) else None


def _from_package_json(root: Path) -> str | None:
    content = _read(root / "package.json")
    if content is None:
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return None
    name = data.get("name") if isinstance(data, dict) else None
    return name if isinstance(name, str) else None


def _from_go_mod(root: Path) -> str | None:
    content = _read(root / "go.mod")
    if content is None:
        return None
    for line in content.splitlines():
        line = line.strip()
        if line.startswith("module "):
            module = line[len("module "):].strip().strip('"')
            return module.rstrip("/").split("/")[-1] or None
    return None


def _from_sbt(root: Path) -> str | None:
    content = _read(root / "build.sbt")
    if content is None:
        return None
    m = re.search(r"""\bname\s*:=\s*["']([^"']+)["']""", content)
    return m.group(1) if m else None


def _from_pom(root: Path) -> str | None:
    content = _read(root / "pom.xml")
    if content is None:
        return None
    try:
        tree = ET.fromstring(content)
    except ET.ParseError:
        return None
    # Direct child only; <parent> carries its own artifactId.
    for child in tree:
        if child.tag.rsplit("}", 1)[-1] == "artifactId" and child.text:
            return child.text.strip()
    return None


def _from_gradle(root: Path) -> str | None:
    for filename in ("settings.gradle", "settings.gradle.kts", "build.gradle", "build.gradle.kts"):
        content = _read(root / filename)
        if content is None:
            continue
        for line in content.splitlines():
            line = line.strip()
            if line.startswith("rootProject.name"):
                m = _QUOTED.search(line)
                if m:
                    return m.group(1)
    return None


def _from_mix(root: Path) -> str | None:
    content = _read(root / "mix.exs")
    if content is None:
        return None
    m = re.search(r"\bapp:\s*:([A-Za-z_][A-Za-z0-9_]*)", content)
    return m.group(1) if m else None


DETECTORS: list[Callable[[Path], str | None]] = [
    _from_cargo,
    _from_package_json,
    _from_go_mod,
    _from_sbt,
    _from_pom,
    _from_gradle,
    _from_mix,
    _from_pyproject,
    _from_setup_py,
]


def detect_project_name(directory: str | Path) -> str:
    """
    Determine the project name for a directory.

    Checks, in order: Cargo.toml, package.json, go.mod, build.sbt, pom.xml,
    Gradle settings/build scripts, mix.exs, pyproject.toml and setup.py.

    Args:
        directory: Project root.

    Returns:
        The manifest's project name, or the directory name.
    """
    root = Path(directory)
    try:
        root = root.resolve()
    except OSError:
        pass

    for detector in DETECTORS:
        name = detector(root)
        if name and name.strip():
            logger.debug("Detected project name", root=str(root), name=name, source=detector.__name__)
            return name.strip()

    return root.name or "unknown"
