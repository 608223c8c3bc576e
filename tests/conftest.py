import argparse
import sys
import xml.etree.ElementTree as ET
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import cppgen  # noqa: E402

FIXTURE_API_XML = GENERATOR_DIR / "tests" / "fixtures" / "api_minimal.xml"


@pytest.fixture
def existing_paths(tmp_path: Path) -> dict[str, Path]:
    api_xml = tmp_path / "api.xml"
    api_xml.write_text('<api prefix="isl_" />\n', encoding="utf-8")

    prologue = tmp_path / "prologue.h"
    prologue.write_text("#include <isl/ctx.h>\n", encoding="utf-8")

    output_dir = tmp_path / "out"
    return {
        "api_xml": api_xml,
        "prologue": prologue,
        "output_dir": output_dir,
    }


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing"


@pytest.fixture
def make_args(existing_paths: dict[str, Path]) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "api": existing_paths["api_xml"],
            "output_dir": existing_paths["output_dir"],
            "mode": None,
            "namespace": None,
            "prologue": None,
            "list_classes": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_api_root() -> Callable[[str], ET.Element]:
    def _make_api_root(inner_xml: str) -> ET.Element:
        return ET.fromstring(f'<api prefix="isl_">{inner_xml}</api>')

    return _make_api_root


@pytest.fixture
def fixture_api_xml() -> Path:
    return FIXTURE_API_XML


@pytest.fixture
def sample_api() -> cppgen.ApiDescription:
    root = ET.parse(FIXTURE_API_XML).getroot()
    return cppgen.load_api_description(root)


@pytest.fixture
def exc_options() -> cppgen.EmitOptions:
    return cppgen.EmitOptions(mode=cppgen.EmissionMode.EXCEPTIONS, prefix="isl_")


@pytest.fixture
def status_options() -> cppgen.EmitOptions:
    return cppgen.EmitOptions(mode=cppgen.EmissionMode.STATUS_CODES, prefix="isl_")


@pytest.fixture
def make_type() -> Callable[..., cppgen.ForeignType]:
    def _make_type(
        kind: cppgen.TypeKind,
        name: str,
        spelling: str | None = None,
        callback: cppgen.CallbackType | None = None,
    ) -> cppgen.ForeignType:
        if spelling is None:
            spelling = f"{name} *" if kind is cppgen.TypeKind.OBJECT else name
        return cppgen.ForeignType(kind, name, spelling, callback)

    return _make_type


@pytest.fixture
def make_param(
    make_type: Callable[..., cppgen.ForeignType],
) -> Callable[..., cppgen.Parameter]:
    def _make_param(
        name: str,
        kind: cppgen.TypeKind,
        type_name: str,
        ownership: cppgen.Ownership | None = None,
    ) -> cppgen.Parameter:
        return cppgen.Parameter(name, make_type(kind, type_name), ownership)

    return _make_param


@pytest.fixture
def make_function(
    make_type: Callable[..., cppgen.ForeignType],
) -> Callable[..., cppgen.ApiFunction]:
    def _make_function(
        name: str,
        returns: cppgen.ForeignType | None = None,
        params: tuple[cppgen.Parameter, ...] = (),
        return_ownership: cppgen.Ownership | None = None,
    ) -> cppgen.ApiFunction:
        if returns is None:
            returns = make_type(cppgen.TypeKind.STAT, "isl_stat")
        return cppgen.ApiFunction(name, returns, params, return_ownership)

    return _make_function
