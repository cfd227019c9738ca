"""Root conftest.py for the vilan monorepo.

Puts every package's ``src`` directory on the import path, registers the
markers used across the suites, marks tests that replace collaborators with
mocks, and provides emulator fixtures shared by the session layers.
"""

from __future__ import annotations

import ast
import inspect
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from _pytest.config import Config
    from _pytest.nodes import Item

    from vilan_core.tracer import RecordingExceptionTracer
    from vilan_ieee488.emulator import GpibLanControllerEmulator, InstrumentEmulator


# Add all package src directories to path for imports
PROJECT_ROOT = Path(__file__).parent
for pkg_dir in PROJECT_ROOT.glob("vilan-*/src"):
    if str(pkg_dir) not in sys.path:
        sys.path.insert(0, str(pkg_dir))


def pytest_configure(config: Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "uses_mock: Test replaces a session layer with a mock (auto-detected or manually marked)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Test requiring a real instrument or GPIB-LAN controller",
    )
    config.addinivalue_line(
        "markers",
        "slow: Test waiting on real timeouts",
    )


# ---------------------------------------------------------------------------
# Mock detection
# ---------------------------------------------------------------------------


class MockDetector(ast.NodeVisitor):
    """AST visitor flagging test code that builds mocks."""

    MOCK_NAMES = frozenset({"MagicMock", "Mock", "patch", "create_autospec", "PropertyMock", "AsyncMock"})

    def __init__(self) -> None:
        self.uses_mock = False

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        name = func.id if isinstance(func, ast.Name) else getattr(func, "attr", "")
        if name in self.MOCK_NAMES:
            self.uses_mock = True
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        # pytest-mock fixture
        if node.id == "mocker":
            self.uses_mock = True
        self.generic_visit(node)


def _check_test_uses_mock(item: Item) -> bool:
    """Return True if the test function's source builds a mock."""
    obj = getattr(item, "obj", None)
    if obj is None:
        return False
    try:
        source = inspect.getsource(obj)
    except (OSError, TypeError):
        return False
    try:
        tree = ast.parse(inspect.cleandoc(source))
    except SyntaxError:
        return False
    detector = MockDetector()
    detector.visit(tree)
    return detector.uses_mock


def pytest_collection_modifyitems(config: Config, items: list[Item]) -> None:
    """Auto-detect and mark tests that use mocking."""
    for item in items:
        if item.get_closest_marker("uses_mock"):
            continue
        if _check_test_uses_mock(item):
            item.add_marker(pytest.mark.uses_mock)


def pytest_report_header(config: Config) -> list[str]:
    """Add the suite name and coverage mode to the pytest header."""
    lines = ["vilan monorepo test suite"]
    if getattr(config.option, "cov_source", None):
        lines.append("Coverage: enabled with mock detection")
    return lines


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def recording_tracer() -> RecordingExceptionTracer:
    """Tracer collecting contained connection handler faults."""
    from vilan_core.tracer import RecordingExceptionTracer

    return RecordingExceptionTracer()


@pytest.fixture
def instrument_emulator() -> InstrumentEmulator:
    """An idle emulated IEEE-488.2 instrument."""
    from vilan_ieee488.emulator import InstrumentEmulator

    return InstrumentEmulator()


@pytest.fixture
def controller_emulator(instrument_emulator: InstrumentEmulator) -> Iterator[GpibLanControllerEmulator]:
    """An emulated GPIB-LAN controller in front of :func:`instrument_emulator`."""
    from vilan_ieee488.emulator import GpibLanControllerEmulator

    controller = GpibLanControllerEmulator(instrument_emulator)
    yield controller
    controller.clear_log()
