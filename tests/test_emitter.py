import importlib
import sys
from collections.abc import Iterator
from pathlib import Path
from types import ModuleType

import pytest

import metagen

VERSION = metagen.Version(0, 4, 0)

# Minimal stand-in for the runtime wrapper package the generated modules
# import from. Only the "rpi" vendor is disabled.
RUNTIME_MODULES = {
    "__init__.py": "",
    "_sys.py": """\
class _Ids:
    def __init__(self):
        self._ids = {}

    def __getattr__(self, name):
        return self._ids.setdefault(name, len(self._ids) + 1)


control_ids = _Ids()
property_ids = _Ids()
""",
    "control.py": """\
from typing import Generic, TypeVar

T = TypeVar("T")
DISABLED_VENDORS = {"rpi"}


def vendor_enabled(vendor):
    return vendor not in DISABLED_VENDORS


class ControlEntry:
    pass


class ControlScalar(ControlEntry, Generic[T]):
    def __init__(self, value):
        self.value = value


def control_entry(control_id, ctype, size=None):
    def wrap(cls):
        cls.ID = control_id
        cls.CTYPE = ctype
        cls.SIZE = size
        if not hasattr(cls, "from_control_value"):
            cls.from_control_value = classmethod(lambda c, value: c(value))
        return cls

    return wrap


property_entry = control_entry
""",
    "control_value.py": """\
ControlValue = object


class ControlValueError(ValueError):
    pass
""",
    "geometry.py": """\
class Point:
    pass


class Rectangle:
    pass


class Size:
    pass
""",
}


@pytest.fixture
def controls(bundle: metagen.RawBundle) -> list[metagen.ControlRecord]:
    return metagen.parse_control_files(bundle.controls)


@pytest.fixture
def runtime_package(tmp_path: Path) -> Iterator[tuple[str, Path]]:
    name = "camwrap"
    package_dir = tmp_path / name
    package_dir.mkdir()
    for filename, contents in RUNTIME_MODULES.items():
        (package_dir / filename).write_text(contents, encoding="utf-8")
    sys.path.insert(0, str(tmp_path))
    try:
        yield name, package_dir
    finally:
        sys.path.remove(str(tmp_path))
        for module in [m for m in sys.modules if m == name or m.startswith(f"{name}.")]:
            del sys.modules[module]


def _load(runtime_package: tuple[str, Path], filename: str, source: str) -> ModuleType:
    name, package_dir = runtime_package
    (package_dir / filename).write_text(source, encoding="utf-8")
    importlib.invalidate_caches()
    return importlib.import_module(f"{name}.{filename[:-3]}")


# ===--- Docstrings and names ---=== #


def test_format_docstring_single_line() -> None:
    assert metagen.format_docstring("Enable the AE.\n", 4) == ['    """Enable the AE."""']


def test_format_docstring_empty_description() -> None:
    assert metagen.format_docstring("  \n") == []


def test_format_docstring_turns_indented_block_into_literal_block() -> None:
    description = "Matrix:\n\n  out = ccm * in\n  done\n\nRow-major.\n"

    assert metagen.format_docstring(description) == [
        '"""Matrix:',
        "",
        "::",
        "",
        "  out = ccm * in",
        "  done",
        "",
        "Row-major.",
        '"""',
    ]


def test_format_docstring_escapes_backslashes_and_quotes() -> None:
    lines = metagen.format_docstring('See \\sa and """quoted"""')
    source = "\n".join(lines)

    assert eval(compile(source, "<doc>", "eval")) == 'See \\sa and """quoted"""\n'


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("AeEnable", "ae_enable"),
        ("ColourCorrectionMatrix", "colour_correction_matrix"),
        ("Bcm2835StatsOutput", "bcm2835_stats_output"),
        ("HdrMode", "hdr_mode"),
        ("AfWindows", "af_windows"),
    ],
)
def test_to_c_type_name(name: str, expected: str) -> None:
    assert metagen.to_c_type_name(name) == expected


def test_to_python_type_shapes() -> None:
    fixed = (metagen.ControlSize(3), metagen.ControlSize(3))

    assert metagen.to_python_type(metagen.ControlType.INT32, None) == "int"
    assert metagen.to_python_type(metagen.ControlType.RECTANGLE, (metagen.DYNAMIC,)) == (
        "list[Rectangle]"
    )
    assert metagen.to_python_type(metagen.ControlType.FLOAT, fixed) == (
        "tuple[tuple[float, ...], ...]"
    )


def test_to_python_type_revalidates_size() -> None:
    with pytest.raises(metagen.ExtractionError):
        metagen.to_python_type(
            metagen.ControlType.INT32, (metagen.DYNAMIC, metagen.ControlSize(2))
        )


def test_enum_variant_name_strips_control_prefix() -> None:
    assert metagen.enum_variant_name("AfMode", "AfModeManual") == "Manual"
    assert metagen.enum_variant_name("AeMeteringMode", "MeteringSpot") == "MeteringSpot"


def test_enum_variant_name_keeps_prefix_when_stripped_name_is_keyword() -> None:
    assert metagen.enum_variant_name("HdrChannel", "HdrChannelNone") == "HdrChannelNone"
    assert metagen.enum_variant_name("HdrChannel", "HdrChannelShort") == "Short"


def test_duplicate_control_name_is_emitted_once(
    capsys: pytest.CaptureFixture[str],
) -> None:
    body = "  - Foo:\n      type: bool\n      description: Foo.\n"
    files = {
        "control_ids_a.yaml": f"controls:\n{body}",
        "control_ids_b.yaml": f"vendor: acme\ncontrols:\n{body}",
    }
    records = metagen.parse_control_files(files)

    source = metagen.generate_controls_source(
        records, metagen.ControlsKind.CONTROL, VERSION, tuple(files)
    )

    compile(source, "controls.py", "exec")
    assert source.count("class Foo(") == 1
    assert "vendor_enabled('acme')" not in source
    assert "duplicate Foo (acme) not emitted" in capsys.readouterr().err


def test_enum_with_keyword_variant_compiles() -> None:
    files = {
        "control_ids_core.yaml": (
            "controls:\n"
            "  - HdrChannel:\n"
            "      type: int32\n"
            "      description: HDR channel of the frame.\n"
            "      enum:\n"
            "        - name: HdrChannelNone\n"
            "          value: 0\n"
            "          description: No HDR channel.\n"
            "        - name: HdrChannelShort\n"
            "          value: 1\n"
            "          description: Short exposure.\n"
        )
    }
    records = metagen.parse_control_files(files)

    source = metagen.generate_controls_source(
        records, metagen.ControlsKind.CONTROL, VERSION, tuple(files)
    )

    compile(source, "controls.py", "exec")
    assert "    HdrChannelNone = 0" in source
    assert "    Short = 1" in source


# ===--- Controls modules ---=== #


def test_controls_source_compiles_and_gates_vendors(
    controls: list[metagen.ControlRecord],
) -> None:
    source = metagen.generate_controls_source(
        controls, metagen.ControlsKind.CONTROL, VERSION, ("control_ids_core.yaml",)
    )

    compile(source, "controls.py", "exec")
    assert source.startswith(metagen._HEADER_BORDER)
    assert "# | libcamera 0.4.0 controls" in source
    assert "if vendor_enabled('draft'):" in source
    assert "if vendor_enabled('rpi'):" in source
    assert "if vendor_enabled('libcamera')" not in source
    assert "@control_entry(ControlId.ColourCorrectionMatrix, 'float', size=(3, 3))" in source
    assert "class Bcm2835StatsOutput(ControlScalar[list[int]]):" in source


def test_properties_source_uses_property_names(bundle: metagen.RawBundle) -> None:
    properties = metagen.parse_control_files(bundle.properties)

    source = metagen.generate_controls_source(
        properties, metagen.ControlsKind.PROPERTY, VERSION
    )

    compile(source, "properties.py", "exec")
    assert "class PropertyId(IntEnum):" in source
    assert "from ._sys import property_ids as _ids" in source
    assert "@property_entry(PropertyId.Location, 'int32')" in source
    assert "def make_dyn(property_id: PropertyId, value: ControlValue)" in source


def test_generated_controls_module_imports_against_runtime(
    controls: list[metagen.ControlRecord],
    runtime_package: tuple[str, Path],
) -> None:
    source = metagen.generate_controls_source(
        controls, metagen.ControlsKind.CONTROL, VERSION
    )

    module = _load(runtime_package, "controls.py", source)

    names = [member.name for member in module.ControlId]
    assert names == [
        "AeEnable",
        "AeMeteringMode",
        "ColourCorrectionMatrix",
        "FrameDurationLimits",
        "AfMode",
        "AePrecaptureTrigger",
    ]
    assert module.ControlId.AfMode.description().startswith("Control to set the mode")
    assert module.AfMode.Auto == 1
    assert module.AePrecaptureTrigger.Start == 1
    assert module.AfMode.Manual.__class__ is module.AfMode
    assert not hasattr(module, "StatsOutputEnable")
    assert module.ColourCorrectionMatrix.SIZE == (3, 3)

    assert module.make_dyn(module.ControlId.AfMode, 1) is module.AfMode.Auto
    enabled = module.make_dyn(module.ControlId.AeEnable, True)
    assert isinstance(enabled, module.AeEnable)
    assert enabled.value is True


def test_make_dyn_rejects_unregistered_id(
    controls: list[metagen.ControlRecord],
    runtime_package: tuple[str, Path],
) -> None:
    source = metagen.generate_controls_source(
        controls[:1], metagen.ControlsKind.CONTROL, VERSION
    )
    module = _load(runtime_package, "controls.py", source)
    errors = sys.modules[f"{runtime_package[0]}.control_value"]

    with pytest.raises(errors.ControlValueError):
        module.make_dyn(999, 1)


def test_empty_record_list_still_compiles() -> None:
    source = metagen.generate_controls_source([], metagen.ControlsKind.CONTROL, VERSION)

    compile(source, "controls.py", "exec")


def test_controls_source_is_deterministic(
    controls: list[metagen.ControlRecord],
) -> None:
    first = metagen.generate_controls_source(controls, metagen.ControlsKind.CONTROL, VERSION)
    second = metagen.generate_controls_source(controls, metagen.ControlsKind.CONTROL, VERSION)

    assert first == second


# ===--- Pixel format info ---=== #


def test_pixel_format_info_source_round_trips(
    bundle: metagen.RawBundle, tables: metagen.ConstantTables
) -> None:
    constants = metagen.parse_format_constants(bundle.formats_yaml, tables)
    infos = metagen.parse_pixel_format_info(bundle.formats_cpp, constants, tables)
    source = metagen.generate_pixel_format_info_source(infos, VERSION)

    namespace: dict[str, object] = {"__name__": "pixel_format_info"}
    exec(compile(source, "pixel_format_info.py", "exec"), namespace)
    rows = namespace["PIXEL_FORMAT_INFO"]

    assert [row.name for row in rows] == [info.name for info in infos]
    for row, info in zip(rows, infos):
        assert row.fourcc == info.fourcc
        assert row.modifier == info.modifier
        assert row.colour_encoding == int(info.colour_encoding)
        assert row.packed is info.packed
        assert len(row.planes) == 3
        assert [tuple(plane) for plane in row.planes] == [tuple(p) for p in info.planes]
        assert row.v4l2_formats == info.v4l2_formats


def test_pixel_format_info_hex_widths() -> None:
    info = metagen.PixelFormatInfo(
        name="R10_T_TILED", fourcc=0x20303152, modifier=0x0700000000000001
    )

    source = metagen.generate_pixel_format_info_source([info], VERSION)

    assert "fourcc=0x20303152," in source
    assert "modifier=0x0700000000000001," in source
    assert "v4l2_formats=()," in source
    assert source.count("PixelFormatPlaneInfoData(bytes_per_group=0") == 3
