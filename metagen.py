"""libcamera metadata generator.

Harvests the control, property and pixel-format metadata of every release
tag of the libcamera git repository and emits one generated Python module
set per version under versioned_files/<version>.

Usage:
    libcamera-meta-gen --repo-dir libcamera-git --output-dir versioned_files
"""

import argparse
import keyword
import re
import shutil
import subprocess
import sys
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import NamedTuple, Protocol

import yaml

DEFAULT_REPO_URL = "https://git.libcamera.org/libcamera/libcamera.git"
DEFAULT_REPO_DIR = Path("libcamera-git")
DEFAULT_OUTPUT_DIR = Path("versioned_files")
DEFAULT_DRM_HEADER = Path("/usr/include/drm/drm_fourcc.h")
DEFAULT_V4L2_HEADER = Path("/usr/include/linux/videodev2.h")
DEFAULT_MIN_VERSION = "0.4.0"

SCHEMA_DIR = "src/libcamera"
TREE_HEADER_DIR = "include/linux"
CONTROLS_PREFIX = "control_ids"
PROPERTIES_PREFIX = "property_ids"
FORMATS_YAML = "formats.yaml"
FORMATS_CPP = "formats.cpp"
DRM_HEADER_NAME = "drm_fourcc.h"
V4L2_HEADER_NAME = "videodev2.h"

CONTROLS_FILE = "controls.py"
PROPERTIES_FILE = "properties.py"
PIXEL_FORMAT_INFO_FILE = "pixel_format_info.py"
GENERATED_FILES: tuple[str, ...] = (
    CONTROLS_FILE,
    PROPERTIES_FILE,
    PIXEL_FORMAT_INFO_FILE,
)

DEFAULT_VENDOR = "libcamera"
DRAFT_VENDOR = "draft"


# ===--- Versions ---=== #


class Version(NamedTuple):
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


EMPTY_REPO_VERSION = Version(0, 0, 0)
MIN_SUPPORTED_VERSION = Version(0, 4, 0)

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)(?:\+[0-9A-Za-z.-]+)?$"
)


class VersionError(ValueError):
    pass


def parse_version(raw: str) -> Version:
    """Parse a MAJOR.MINOR.PATCH release version.

    Build metadata (``+rpt20240418``) is accepted and ignored. Pre-release
    versions are not releases and are rejected.
    """
    match = _SEMVER_RE.match(raw.strip())
    if match is None:
        raise VersionError(f"Not a release version: {raw!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return Version(major, minor, patch)


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    repo_dir: Path
    repo_url: str
    output_dir: Path
    min_version: Version
    drm_header: Path
    v4l2_header: Path
    keep_going: bool = False
    fetch: bool = True


@dataclass(frozen=True)
class DiscoveryConfig:
    repo_dir: Path
    repo_url: str
    min_version: Version
    fetch: bool = True


VALID_ERROR_CODES = {
    "INVALID_VERSION",
    "INVALID_POLICY",
    "MISSING_OUT_DIR",
    "CONFLICT_GENERATE_DISCOVERY",
    "PATH_NOT_FOUND",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class HarvestError(RuntimeError):
    """The libcamera repository could not be cloned, read or checked out."""


class ExtractionError(ValueError):
    """A harvested schema or source file could not be turned into records."""


def parse_version_option(raw: str, flag: str) -> Version:
    try:
        return parse_version(raw)
    except VersionError as err:
        raise ConfigError(
            "INVALID_VERSION",
            f"Invalid version for {flag}: {raw}",
            "Versions are MAJOR.MINOR.PATCH, for example 0.4.0.",
        ) from err


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate versioned libcamera control and pixel-format metadata"
    )

    parser.add_argument("--repo-dir", type=Path, default=DEFAULT_REPO_DIR)
    parser.add_argument("--repo-url", type=str, default=DEFAULT_REPO_URL)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--min-version", type=str, default=DEFAULT_MIN_VERSION)
    parser.add_argument("--drm-header", type=Path, default=DEFAULT_DRM_HEADER)
    parser.add_argument("--v4l2-header", type=Path, default=DEFAULT_V4L2_HEADER)
    parser.add_argument("--keep-going", action="store_true", default=False)
    parser.add_argument("--no-fetch", action="store_true", default=False)
    parser.add_argument("--list-versions", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    if args.list_versions and args.keep_going:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "--keep-going cannot be combined with --list-versions.",
            "Drop --keep-going when listing versions.",
        )

    min_version = parse_version_option(args.min_version, "--min-version")
    fetch = not args.no_fetch
    if not fetch:
        validate_path_exists(
            args.repo_dir,
            "--repo-dir",
            "--no-fetch needs an existing clone:\n"
            f"  git clone {args.repo_url} {args.repo_dir}\n"
            "Or drop --no-fetch to clone it automatically.",
        )

    if args.list_versions:
        return DiscoveryConfig(
            repo_dir=args.repo_dir,
            repo_url=args.repo_url,
            min_version=min_version,
            fetch=fetch,
        )

    return GenerateConfig(
        repo_dir=args.repo_dir,
        repo_url=args.repo_url,
        output_dir=args.output_dir,
        min_version=min_version,
        drm_header=args.drm_header,
        v4l2_header=args.v4l2_header,
        keep_going=bool(args.keep_going),
        fetch=fetch,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- C token scanner ---=== #


class Token(NamedTuple):
    kind: str
    text: str


class Group(NamedTuple):
    """A balanced ``{}``, ``()`` or ``[]`` group of tokens and sub-groups."""

    open: str
    items: tuple


_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<comment>//[^\n]*|/\*.*?\*/)
    |(?P<ident>[A-Za-z_]\w*)
    |(?P<number>(?:0[xX][0-9A-Fa-f]+|\d+)[uUlL]*)
    |(?P<char>'(?:\\[^\n]|[^'\\\n])*')
    |(?P<string>"(?:\\[^\n]|[^"\\\n])*")
    |(?P<punct>::|->|<<|>>|[{}()\[\],;=.|&<>+\-*/%^!~?:\#])
    |(?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_PAIRS = {"{": "}", "(": ")", "[": "]"}
_OPENER_OF = {close: open_ for open_, close in _PAIRS.items()}

_SIMPLE_ESCAPES = {
    "n": 0x0A,
    "t": 0x09,
    "r": 0x0D,
    "a": 0x07,
    "b": 0x08,
    "f": 0x0C,
    "v": 0x0B,
    "\\": 0x5C,
    "'": 0x27,
    '"': 0x22,
    "?": 0x3F,
}


def tokenize_c(text: str) -> list[Token]:
    tokens = []
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup
        if kind in ("space", "comment"):
            continue
        tokens.append(Token(kind, match.group()))
    return tokens


def group_tokens(tokens: Iterable[Token]) -> list:
    """Fold a flat token stream into nested Groups of balanced delimiters."""
    stack: list[tuple[str, list]] = [("", [])]
    for tok in tokens:
        if tok.kind == "punct" and tok.text in _PAIRS:
            stack.append((tok.text, []))
        elif tok.kind == "punct" and tok.text in _OPENER_OF:
            opener, items = stack[-1]
            if opener != _OPENER_OF[tok.text]:
                raise ExtractionError(f"Unbalanced '{tok.text}' in C source")
            stack.pop()
            stack[-1][1].append(Group(opener, tuple(items)))
        else:
            stack[-1][1].append(tok)
    if len(stack) != 1:
        raise ExtractionError(f"Unclosed '{stack[-1][0]}' in C source")
    return stack[0][1]


def split_items(items: Sequence, separator: str = ",") -> list[list]:
    parts: list[list] = []
    current: list = []
    for item in items:
        if _is_punct(item, separator):
            parts.append(current)
            current = []
        else:
            current.append(item)
    if current:
        parts.append(current)
    return parts


def _is_punct(item: object, text: str) -> bool:
    return isinstance(item, Token) and item.kind == "punct" and item.text == text


def _is_ident(item: object, text: str | None = None) -> bool:
    return (
        isinstance(item, Token)
        and item.kind == "ident"
        and (text is None or item.text == text)
    )


def _is_group(item: object, open_: str) -> bool:
    return isinstance(item, Group) and item.open == open_


def _flatten(items: Iterable) -> Iterator[Token]:
    for item in items:
        if isinstance(item, Group):
            yield from _flatten(item.items)
        else:
            yield item


def parse_c_int(text: str) -> int:
    s = text.strip().rstrip("uUlL")
    if s.startswith(("0x", "0X")):
        return int(s, 16)
    if len(s) > 1 and s.startswith("0"):
        return int(s, 8)
    return int(s)


def parse_char_literal(text: str) -> int:
    body = text[1:-1]
    if not body.startswith("\\"):
        if len(body) != 1:
            raise ValueError(f"Unsupported character literal: {text}")
        return ord(body)
    escape = body[1:]
    if escape.startswith("x"):
        return int(escape[1:], 16)
    if escape and all(c in "01234567" for c in escape):
        return int(escape, 8)
    if escape in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[escape]
    raise ValueError(f"Unsupported character literal: {text}")


def iter_defines(header_text: str) -> Iterator[tuple[str, list[Token]]]:
    """Yield (name, body tokens) for every ``#define`` in a C header."""
    text = re.sub(r"/\*.*?\*/", " ", header_text, flags=re.DOTALL)
    text = re.sub(r"\\\r?\n", " ", text)
    for line in text.splitlines():
        stripped = line.lstrip()
        if not stripped.startswith("#"):
            continue
        tokens = tokenize_c(stripped[1:])
        if len(tokens) < 2 or not _is_ident(tokens[0], "define"):
            continue
        if not _is_ident(tokens[1]):
            continue
        yield tokens[1].text, tokens[2:]


def match_macro_call(
    body: list[Token], callees: Iterable[str]
) -> tuple[str, list[list]] | None:
    """Match a define body of the exact form ``callee(arg, ...)``."""
    try:
        tree = group_tokens(body)
    except ExtractionError:
        return None
    if len(tree) != 2 or not _is_group(tree[1], "("):
        return None
    if not isinstance(tree[0], Token) or tree[0].text not in set(callees):
        return None
    return tree[0].text, split_items(tree[1].items)


# ===--- Constant tables ---=== #

BIG_ENDIAN_BIT = 1 << 31
MODIFIER_VENDOR_SHIFT = 56
MODIFIER_CODE_MASK = (1 << MODIFIER_VENDOR_SHIFT) - 1

DRM_FOURCC_MACRO = "fourcc_code"
DRM_FOURCC_PREFIX = "DRM_FORMAT_"
DRM_MODIFIER_MACRO = "fourcc_mod_code"
DRM_VENDOR_PREFIX = "DRM_FORMAT_MOD_VENDOR_"
V4L2_FOURCC_MACRO = "v4l2_fourcc"
V4L2_FOURCC_PREFIX = "V4L2_PIX_FMT_"


def pack_fourcc(a: int, b: int, c: int, d: int, big_endian: bool = False) -> int:
    code = (a & 0xFF) | (b & 0xFF) << 8 | (c & 0xFF) << 16 | (d & 0xFF) << 24
    if big_endian:
        code |= BIG_ENDIAN_BIT
    return code


def pack_modifier(vendor: int, code: int) -> int:
    return (vendor & 0xFF) << MODIFIER_VENDOR_SHIFT | (code & MODIFIER_CODE_MASK)


def _char_args(args: list[list]) -> list[int] | None:
    chars = []
    for arg in args:
        if len(arg) != 1 or not isinstance(arg[0], Token) or arg[0].kind != "char":
            return None
        try:
            chars.append(parse_char_literal(arg[0].text))
        except ValueError:
            return None
    return chars


def build_fourcc_table(
    header_text: str, macro: str = DRM_FOURCC_MACRO, prefix: str = DRM_FOURCC_PREFIX
) -> dict[str, int]:
    """Map ``<prefix>*`` macro names to their packed 32-bit fourcc codes.

    Recognises ``#define NAME macro('a', 'b', 'c', 'd')`` and the ``macro_be``
    variant, which additionally sets bit 31.
    """
    big_endian_macro = f"{macro}_be"
    table: dict[str, int] = {}
    for name, body in iter_defines(header_text):
        if not name.startswith(prefix):
            continue
        call = match_macro_call(body, (macro, big_endian_macro))
        if call is None:
            continue
        callee, args = call
        chars = _char_args(args)
        if chars is None or len(chars) != 4:
            continue
        table[name] = pack_fourcc(*chars, big_endian=callee == big_endian_macro)
    return table


def build_modifier_table(
    header_text: str,
    macro: str = DRM_MODIFIER_MACRO,
    vendor_prefix: str = DRM_VENDOR_PREFIX,
) -> dict[str, int]:
    """Map modifier macro names to their 64-bit vendor-qualified values.

    Vendor ids come from ``#define <vendor_prefix><V> <int>``; modifiers from
    ``#define NAME fourcc_mod_code(<V>, <int>)``. An unknown vendor resolves
    to vendor id 0.
    """
    vendors: dict[str, int] = {}
    calls: list[tuple[str, str, int]] = []
    for name, body in iter_defines(header_text):
        if name.startswith(vendor_prefix):
            if len(body) == 1 and body[0].kind == "number":
                vendors[name[len(vendor_prefix):]] = parse_c_int(body[0].text)
            continue
        call = match_macro_call(body, (macro,))
        if call is None or len(call[1]) != 2:
            continue
        vendor_arg, code_arg = call[1]
        if len(vendor_arg) != 1 or not _is_ident(vendor_arg[0]):
            continue
        if len(code_arg) != 1 or code_arg[0].kind != "number":
            continue
        calls.append((name, vendor_arg[0].text, parse_c_int(code_arg[0].text)))
    return {
        name: pack_modifier(vendors.get(vendor, 0), code)
        for name, vendor, code in calls
    }


@dataclass(frozen=True)
class ConstantTables:
    """Lookup tables scraped from the DRM and V4L2 uapi headers.

    Attributes:
        fourcc: ``DRM_FORMAT_*`` name -> 32-bit fourcc code.
        modifier: modifier macro name -> 64-bit modifier.
        legacy: ``V4L2_PIX_FMT_*`` name -> 32-bit fourcc code.
    """

    fourcc: dict[str, int] = field(default_factory=dict)
    modifier: dict[str, int] = field(default_factory=dict)
    legacy: dict[str, int] = field(default_factory=dict)

    def with_fallback(self, other: "ConstantTables") -> "ConstantTables":
        """Return tables where names missing here are taken from ``other``."""
        return ConstantTables(
            fourcc={**other.fourcc, **self.fourcc},
            modifier={**other.modifier, **self.modifier},
            legacy={**other.legacy, **self.legacy},
        )


def build_constant_tables(drm_text: str, v4l2_text: str) -> ConstantTables:
    return ConstantTables(
        fourcc=build_fourcc_table(drm_text),
        modifier=build_modifier_table(drm_text),
        legacy=build_fourcc_table(v4l2_text, V4L2_FOURCC_MACRO, V4L2_FOURCC_PREFIX),
    )


def _read_header(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as err:
        print(f"Warning: failed to read {path}: {err}", file=sys.stderr)
        return ""


def load_constant_tables(drm_header: Path, v4l2_header: Path) -> ConstantTables:
    """Build the constant tables from the installed uapi headers.

    A missing header only produces a warning and empty tables; lookups that
    need a name from it fail later, during extraction.
    """
    return build_constant_tables(_read_header(drm_header), _read_header(v4l2_header))


# ===--- Tag harvest ---=== #


@dataclass(frozen=True)
class RawBundle:
    """Raw schema files read from one checked-out libcamera tag.

    Attributes:
        controls: control_ids*.yaml filename -> contents, filename sorted.
        properties: property_ids*.yaml filename -> contents, filename sorted.
        formats_yaml: The pixel format catalogue.
        formats_cpp: The pixel format layout table source.
        headers: Copies of the uapi headers shipped in the tree
            (drm_fourcc.h, videodev2.h) when present.
    """

    controls: dict[str, str]
    properties: dict[str, str]
    formats_yaml: str
    formats_cpp: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TagDecision:
    ref: str
    version: Version | None
    reason: str | None

    @property
    def accepted(self) -> bool:
        return self.reason is None


class SourceRepository(Protocol):
    def tags(self) -> list[str]: ...

    def checkout(self, ref: str) -> None: ...

    def read_dir(self, relpath: str) -> list[str]: ...

    def exists(self, relpath: str) -> bool: ...

    def read_file(self, relpath: str) -> str: ...


class GitRepository:
    """A local libcamera clone driven through the ``git`` command line."""

    def __init__(self, path: Path, url: str | None = None):
        self.path = Path(path)
        self.url = url

    def _run(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as err:
            raise HarvestError("git executable not found on PATH") from err
        except subprocess.CalledProcessError as err:
            detail = (err.stderr or "").strip()
            raise HarvestError(f"git {' '.join(args)} failed: {detail}") from err
        return result.stdout

    def _git(self, *args: str) -> str:
        return self._run(["-C", str(self.path), *args])

    def ensure_clone(self, fetch: bool = True) -> None:
        if not (self.path / ".git").exists():
            if self.url is None:
                raise HarvestError(f"No git clone at {self.path} and no URL to clone")
            print(f"Cloning: {self.url} -> {self.path}")
            self._run(["clone", self.url, str(self.path)])
            return
        if not fetch:
            return
        try:
            self._git("fetch", "--all", "--tags", "--force")
        except HarvestError as err:
            print(f"Warning: using existing clone, {err}", file=sys.stderr)

    def tags(self) -> list[str]:
        output = self._git("for-each-ref", "--format=%(refname)", "refs/tags")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def checkout(self, ref: str) -> None:
        self._git("checkout", "--force", "--quiet", ref)

    def read_dir(self, relpath: str) -> list[str]:
        directory = self.path / relpath
        if not directory.is_dir():
            raise HarvestError(f"Missing directory in checkout: {relpath}")
        return sorted(p.name for p in directory.iterdir() if p.is_file())

    def exists(self, relpath: str) -> bool:
        return (self.path / relpath).is_file()

    def read_file(self, relpath: str) -> str:
        try:
            return (self.path / relpath).read_text(encoding="utf-8")
        except OSError as err:
            raise HarvestError(f"Missing file in checkout: {relpath}") from err


def version_from_tag(ref: str) -> Version | None:
    """Return the release version named by a tag ref, if it names one."""
    name = ref.rsplit("/", 1)[-1]
    if not name.startswith("v"):
        return None
    try:
        return parse_version(name[1:])
    except VersionError:
        return None


def accept_version(version: Version, floor: Version = MIN_SUPPORTED_VERSION) -> bool:
    return version != EMPTY_REPO_VERSION and version >= floor


def classify_tag(ref: str, floor: Version = MIN_SUPPORTED_VERSION) -> TagDecision:
    version = version_from_tag(ref)
    if version is None:
        return TagDecision(ref, None, "not a version tag")
    if version == EMPTY_REPO_VERSION:
        return TagDecision(ref, version, "empty repository")
    if not accept_version(version, floor):
        return TagDecision(ref, version, f"below minimum {floor}")
    return TagDecision(ref, version, None)


def select_tags(
    refs: Iterable[str], floor: Version = MIN_SUPPORTED_VERSION
) -> list[tuple[Version, str]]:
    """Return the (version, ref) pairs worth harvesting, ascending by version."""
    selected: dict[Version, str] = {}
    for ref in sorted(refs):
        decision = classify_tag(ref, floor)
        if decision.accepted:
            selected[decision.version] = ref
    return sorted(selected.items())


def _schema_files(repo: SourceRepository, prefix: str) -> dict[str, str]:
    names = sorted(
        name
        for name in repo.read_dir(SCHEMA_DIR)
        if name.startswith(prefix) and name.endswith(".yaml")
    )
    if not names:
        raise HarvestError(f"No {prefix}*.yaml files in {SCHEMA_DIR}")
    return {name: repo.read_file(f"{SCHEMA_DIR}/{name}") for name in names}


def read_raw_bundle(repo: SourceRepository) -> RawBundle:
    headers = {}
    for name in (DRM_HEADER_NAME, V4L2_HEADER_NAME):
        relpath = f"{TREE_HEADER_DIR}/{name}"
        if repo.exists(relpath):
            headers[name] = repo.read_file(relpath)
    return RawBundle(
        controls=_schema_files(repo, CONTROLS_PREFIX),
        properties=_schema_files(repo, PROPERTIES_PREFIX),
        formats_yaml=repo.read_file(f"{SCHEMA_DIR}/{FORMATS_YAML}"),
        formats_cpp=repo.read_file(f"{SCHEMA_DIR}/{FORMATS_CPP}"),
        headers=headers,
    )


def harvest(
    repo: SourceRepository, floor: Version = MIN_SUPPORTED_VERSION
) -> list[tuple[Version, RawBundle]]:
    """Check out every accepted tag in turn and read its raw bundle.

    Returns:
        (version, bundle) pairs in ascending version order.

    Raises:
        HarvestError: A checkout failed or a required file is missing.
    """
    bundles = []
    for version, ref in select_tags(repo.tags(), floor):
        print(f"  Extracting: {version} ({ref})")
        repo.checkout(ref)
        bundles.append((version, read_raw_bundle(repo)))
    return bundles


# ===--- Schema model ---=== #


class ControlType(Enum):
    BOOL = "bool"
    BYTE = "byte"
    UINT16 = "uint16"
    UINT32 = "uint32"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT = "float"
    STRING = "string"
    RECTANGLE = "Rectangle"
    SIZE = "Size"
    POINT = "Point"


_CONTROL_TYPE_ALIASES = {"uint8": ControlType.BYTE}

PYTHON_TYPES = {
    ControlType.BOOL: "bool",
    ControlType.BYTE: "int",
    ControlType.UINT16: "int",
    ControlType.UINT32: "int",
    ControlType.INT32: "int",
    ControlType.INT64: "int",
    ControlType.FLOAT: "float",
    ControlType.STRING: "str",
    ControlType.RECTANGLE: "Rectangle",
    ControlType.SIZE: "Size",
    ControlType.POINT: "Point",
}


class ControlSize(NamedTuple):
    """One array dimension; ``length is None`` marks a dynamic dimension."""

    length: int | None

    @property
    def is_dynamic(self) -> bool:
        return self.length is None


DYNAMIC = ControlSize(None)


class ControlEnumValue(NamedTuple):
    name: str
    value: int
    description: str


@dataclass(frozen=True)
class ControlRecord:
    name: str
    vendor: str
    ctype: ControlType
    description: str
    size: tuple[ControlSize, ...] | None = None
    enumeration: tuple[ControlEnumValue, ...] | None = None


@dataclass(frozen=True)
class FormatConstant:
    name: str
    fourcc: int
    modifier: int


class ColourEncoding(IntEnum):
    RGB = 0
    YUV = 1
    RAW = 2


class PlaneInfo(NamedTuple):
    bytes_per_group: int
    vertical_sub_sampling: int


UNUSED_PLANE = PlaneInfo(0, 0)
PLANE_SLOTS = 3


@dataclass(frozen=True)
class PixelFormatInfo:
    name: str
    fourcc: int
    modifier: int
    bits_per_pixel: int = 0
    colour_encoding: ColourEncoding = ColourEncoding.RGB
    packed: bool = False
    pixels_per_group: int = 0
    planes: tuple[PlaneInfo, ...] = (UNUSED_PLANE,) * PLANE_SLOTS
    v4l2_formats: tuple[int, ...] = ()


# ===--- Control schema parsing ---=== #


def validate_control_size(dims: Sequence[ControlSize]) -> None:
    if not dims:
        raise ExtractionError("Array-like datatype with zero dimensions")
    if any(dim.is_dynamic for dim in dims) and len(dims) > 1:
        raise ExtractionError(
            "Dynamic length with more than 1 dimension is not supported"
        )


def parse_control_size(raw: object) -> tuple[ControlSize, ...]:
    if not isinstance(raw, list):
        raise ExtractionError(f"size must be a list, got {raw!r}")
    dims = []
    for dim in raw:
        if isinstance(dim, bool):
            raise ExtractionError(f"Invalid size dimension: {dim!r}")
        if isinstance(dim, int):
            if dim < 0:
                raise ExtractionError(f"Negative size dimension: {dim}")
            dims.append(ControlSize(dim))
        elif isinstance(dim, str):
            dims.append(DYNAMIC)
        else:
            raise ExtractionError(f"Invalid size dimension: {dim!r}")
    validate_control_size(dims)
    return tuple(dims)


def parse_control_type(raw: object) -> ControlType:
    if isinstance(raw, str) and raw in _CONTROL_TYPE_ALIASES:
        return _CONTROL_TYPE_ALIASES[raw]
    try:
        return ControlType(raw)
    except ValueError as err:
        raise ExtractionError(f"Unknown control type: {raw!r}") from err


def parse_control_enum(raw: object) -> tuple[ControlEnumValue, ...]:
    if not isinstance(raw, list):
        raise ExtractionError(f"enum must be a list, got {raw!r}")
    values = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ExtractionError(f"Invalid enum entry: {entry!r}")
        name = entry.get("name")
        value = entry.get("value")
        description = entry.get("description")
        if not isinstance(name, str) or not name.isidentifier():
            raise ExtractionError(f"Invalid enum value name: {name!r}")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ExtractionError(f"Enum value {name} has non-integer value {value!r}")
        if not isinstance(description, str):
            raise ExtractionError(f"Enum value {name} has no description")
        values.append(ControlEnumValue(name, value, description))
    return tuple(values)


def parse_control_entry(
    name: str, body: object, document_vendor: str | None = None
) -> ControlRecord:
    if not name.isidentifier():
        raise ExtractionError(f"Invalid control name: {name!r}")
    if not isinstance(body, dict):
        raise ExtractionError(f"Control {name}: expected a mapping")

    if document_vendor:
        vendor = str(document_vendor)
    elif body.get("draft") is True:
        vendor = DRAFT_VENDOR
    else:
        vendor = DEFAULT_VENDOR

    description = body.get("description")
    if not isinstance(description, str):
        raise ExtractionError(f"Control {name}: missing description")

    try:
        ctype = parse_control_type(body.get("type"))
        size = parse_control_size(body["size"]) if "size" in body else None
        enumeration = parse_control_enum(body["enum"]) if "enum" in body else None
    except ExtractionError as err:
        raise ExtractionError(f"Control {name}: {err}") from err

    return ControlRecord(
        name=name,
        vendor=vendor,
        ctype=ctype,
        description=description,
        size=size,
        enumeration=enumeration,
    )


def _load_yaml_documents(filename: str, text: str) -> list:
    try:
        return [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as err:
        raise ExtractionError(f"{filename}: invalid YAML: {err}") from err


def parse_control_files(files: Mapping[str, str]) -> list[ControlRecord]:
    """Parse control/property schema files into records.

    Files are read in filename order and entries keep their in-file order, so
    the result is stable across runs. Names repeated across files are kept as
    separate records.
    """
    records = []
    for filename in sorted(files):
        for document in _load_yaml_documents(filename, files[filename]):
            if not isinstance(document, dict):
                raise ExtractionError(f"{filename}: expected a mapping document")
            entries = document.get("controls")
            if not isinstance(entries, list):
                raise ExtractionError(f"{filename}: missing 'controls' list")
            vendor = document.get("vendor")
            for entry in entries:
                if not isinstance(entry, dict):
                    raise ExtractionError(f"{filename}: invalid entry {entry!r}")
                for name, body in entry.items():
                    try:
                        records.append(parse_control_entry(str(name), body, vendor))
                    except ExtractionError as err:
                        raise ExtractionError(f"{filename}: {err}") from err
    return records


# ===--- Format catalogue ---=== #


def legacy_fourcc_name(name: str) -> str:
    suffix = name[len(DRM_FOURCC_PREFIX):] if name.startswith(DRM_FOURCC_PREFIX) else name
    return V4L2_FOURCC_PREFIX + suffix


def resolve_fourcc(name: str, tables: ConstantTables) -> int:
    if name in tables.fourcc:
        return tables.fourcc[name]
    fallback = legacy_fourcc_name(name)
    if fallback in tables.legacy:
        return tables.legacy[fallback]
    raise ExtractionError(f"missing DRM fourcc for {name} (also tried {fallback})")


def parse_format_entry(name: str, body: object, tables: ConstantTables) -> FormatConstant:
    if not isinstance(body, dict) or not isinstance(body.get("fourcc"), str):
        raise ExtractionError(f"Format {name}: missing fourcc")
    fourcc = resolve_fourcc(body["fourcc"], tables)
    if body.get("big_endian") is True:
        fourcc |= BIG_ENDIAN_BIT

    modifier = 0
    modifier_name = body.get("modifier", body.get("mod"))
    if modifier_name is not None:
        if modifier_name not in tables.modifier:
            raise ExtractionError(f"Format {name}: missing modifier {modifier_name}")
        modifier = tables.modifier[modifier_name]

    return FormatConstant(name=name, fourcc=fourcc, modifier=modifier)


def parse_format_constants(formats_yaml: str, tables: ConstantTables) -> list[FormatConstant]:
    constants = []
    for document in _load_yaml_documents(FORMATS_YAML, formats_yaml):
        formats = document.get("formats") if isinstance(document, dict) else None
        if not isinstance(formats, list):
            continue
        for entry in formats:
            if not isinstance(entry, dict):
                raise ExtractionError(f"{FORMATS_YAML}: invalid entry {entry!r}")
            for name, body in entry.items():
                constants.append(parse_format_entry(str(name), body, tables))
    return constants


# ===--- Pixel format layout table ---=== #


def _match_format_entry(group: Group) -> tuple[str, tuple] | None:
    items = group.items
    if group.open != "{" or len(items) < 5:
        return None
    if not (
        _is_ident(items[0], "formats")
        and _is_punct(items[1], "::")
        and _is_ident(items[2])
        and _is_punct(items[3], ",")
        and _is_group(items[4], "{")
    ):
        return None
    rest = items[5:]
    if rest and not (len(rest) == 1 and _is_punct(rest[0], ",")):
        return None
    return items[2].text, items[4].items


def _walk_format_entries(items: Iterable) -> Iterator[tuple[str, tuple]]:
    for item in items:
        if not isinstance(item, Group):
            continue
        entry = _match_format_entry(item)
        if entry is not None:
            yield entry
        else:
            yield from _walk_format_entries(item.items)


def iter_pixel_format_entries(formats_cpp: str) -> Iterator[tuple[str, tuple]]:
    """Yield (format name, field block) pairs in source order."""
    yield from _walk_format_entries(group_tokens(tokenize_c(formats_cpp)))


def designated_fields(block: Iterable) -> dict[str, list]:
    fields: dict[str, list] = {}
    for part in split_items(list(block)):
        if len(part) >= 3 and _is_punct(part[0], ".") and _is_ident(part[1]):
            if _is_punct(part[2], "="):
                fields.setdefault(part[1].text, part[3:])
    return fields


def _first_int(value: Iterable) -> int:
    for tok in _flatten(value):
        if tok.kind == "number":
            return parse_c_int(tok.text)
    return 0


def _colour_encoding(value: Iterable) -> ColourEncoding:
    for tok in _flatten(value):
        if tok.kind == "ident" and tok.text.startswith("ColourEncoding"):
            keyword = tok.text[len("ColourEncoding"):]
            if keyword in ColourEncoding.__members__:
                return ColourEncoding[keyword]
    return ColourEncoding.RGB


def _flag(value: Iterable) -> bool:
    for tok in _flatten(value):
        if tok.kind == "ident" and tok.text in ("true", "false"):
            return tok.text == "true"
    return False


def _plane_pairs(items: Iterable) -> Iterator[PlaneInfo]:
    for item in items:
        if not isinstance(item, Group):
            continue
        numbers = [part for part in split_items(item.items)]
        if len(numbers) == 2 and all(
            len(part) == 1 and isinstance(part[0], Token) and part[0].kind == "number"
            for part in numbers
        ):
            yield PlaneInfo(parse_c_int(numbers[0][0].text), parse_c_int(numbers[1][0].text))
        else:
            yield from _plane_pairs(item.items)


def _planes(value: Iterable) -> tuple[PlaneInfo, ...]:
    planes = list(_plane_pairs(value))[:PLANE_SLOTS]
    planes.extend([UNUSED_PLANE] * (PLANE_SLOTS - len(planes)))
    return tuple(planes)


def _v4l2_names(items: Sequence) -> Iterator[str]:
    for index, item in enumerate(items):
        if isinstance(item, Group):
            yield from _v4l2_names(item.items)
        elif _is_ident(item, "V4L2PixelFormat") and index + 1 < len(items):
            call = items[index + 1]
            if _is_group(call, "(") and len(call.items) == 1 and _is_ident(call.items[0]):
                yield call.items[0].text


def extract_pixel_format_info(
    constant: FormatConstant, block: Iterable, legacy: Mapping[str, int]
) -> PixelFormatInfo:
    fields = designated_fields(block)
    return PixelFormatInfo(
        name=constant.name,
        fourcc=constant.fourcc,
        modifier=constant.modifier,
        bits_per_pixel=_first_int(fields.get("bitsPerPixel", ())),
        colour_encoding=_colour_encoding(fields.get("colourEncoding", ())),
        packed=_flag(fields.get("packed", ())),
        pixels_per_group=_first_int(fields.get("pixelsPerGroup", ())),
        planes=_planes(fields.get("planes", ())),
        v4l2_formats=tuple(
            legacy[name]
            for name in _v4l2_names(fields.get("v4l2Formats", []))
            if name in legacy
        ),
    )


def parse_pixel_format_info(
    formats_cpp: str,
    constants: Iterable[FormatConstant],
    tables: ConstantTables,
) -> list[PixelFormatInfo]:
    """Extract layout records from formats.cpp, in source order.

    Entries naming a format absent from ``constants`` are dropped, as are
    V4L2 aliases that the legacy table cannot resolve. Fields missing from an
    entry default to zero, false or RGB.
    """
    by_name = {constant.name: constant for constant in constants}
    infos = []
    for name, block in iter_pixel_format_entries(formats_cpp):
        constant = by_name.get(name)
        if constant is None:
            continue
        infos.append(extract_pixel_format_info(constant, block, tables.legacy))
    return infos


# ===--- Code emission ---=== #

_HEADER_BORDER: str = "# x-------------------------------------------x #"


class ControlsKind(Enum):
    CONTROL = "control"
    PROPERTY = "property"

    @property
    def id_enum(self) -> str:
        return "ControlId" if self is ControlsKind.CONTROL else "PropertyId"

    @property
    def plural(self) -> str:
        return "controls" if self is ControlsKind.CONTROL else "properties"

    @property
    def decorator(self) -> str:
        return f"{self.value}_entry"

    @property
    def native_ids(self) -> str:
        return f"{self.value}_ids"


def format_file_header(title: str, sources: Sequence[str] = ()) -> list[str]:
    """Return the boxed comment that opens every generated module.

    The header carries no timestamp so regenerating an unchanged version is
    byte-identical.
    """
    lines = [
        _HEADER_BORDER,
        f"# | {title}",
        "# | Generated by libcamera-meta-gen. Do not edit.",
    ]
    if sources:
        lines.append(f"# | Source: {', '.join(sources)}")
    lines.append(_HEADER_BORDER)
    return lines


def _escape_docstring_line(line: str) -> str:
    return line.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')


def format_docstring(description: str, indent: int = 0) -> list[str]:
    """Render a schema description as docstring lines.

    A line indented by two or more spaces opens a preformatted block. It
    becomes a reST literal block and ends at the first non-blank line that
    is not indented.
    """
    if not description.strip():
        return []
    pad = " " * indent
    body: list[str] = []
    in_text_block = False
    for line in description.strip().split("\n"):
        line = line.rstrip()
        if not line:
            body.append("")
            continue
        if not in_text_block and line.startswith("  "):
            in_text_block = True
            body.extend(["::", ""])
        elif in_text_block and not line.startswith("  "):
            in_text_block = False
            if body[-1]:
                body.append("")
        body.append(_escape_docstring_line(line))

    if len(body) == 1 and not body[0].endswith('"'):
        return [f'{pad}"""{body[0]}"""']
    lines = [f'{pad}"""{body[0]}']
    lines.extend(f"{pad}{line}" if line else "" for line in body[1:])
    lines.append(f'{pad}"""')
    return lines


def to_c_type_name(name: str) -> str:
    """Convert a CamelCase control name to the snake_case native id stem."""
    out = []
    for i, char in enumerate(name):
        if i > 0:
            prev = name[i - 1]
            following = name[i + 1] if i + 1 < len(name) else ""
            split = (
                (char.isupper() and prev.islower())
                or (char.isupper() and following.islower())
                or (not char.isnumeric() and prev.isnumeric())
            )
            if split:
                out.append("_")
        out.append(char.lower())
    return "".join(out)


def to_python_type(ctype: ControlType, size: Sequence[ControlSize] | None) -> str:
    inner = PYTHON_TYPES[ctype]
    if size is None:
        return inner
    validate_control_size(size)
    if size[0].is_dynamic:
        return f"list[{inner}]"
    for _dim in size:
        inner = f"tuple[{inner}, ...]"
    return inner


def enum_variant_name(control_name: str, value_name: str) -> str:
    stripped = value_name.replace(control_name, "")
    if stripped.isidentifier() and not keyword.iskeyword(stripped):
        return stripped
    return value_name


def _gated(vendor: str, body: list[str], indent: int = 0) -> list[str]:
    pad = " " * indent
    if vendor == DEFAULT_VENDOR:
        return [f"{pad}{line}" if line else "" for line in body]
    lines = [f"{pad}if vendor_enabled({vendor!r}):"]
    lines.extend(f"{pad}    {line}" if line else "" for line in body)
    return lines


def _entry_lines(record: ControlRecord, kind: ControlsKind) -> list[str]:
    id_ref = f"{kind.id_enum}.{record.name}"
    args = [id_ref, repr(record.ctype.value)]
    if record.size is not None:
        args.append(f"size={tuple(dim.length for dim in record.size)!r}")
    lines = [f"@{kind.decorator}({', '.join(args)})"]

    docstring = format_docstring(record.description, 4)
    if record.enumeration is not None:
        lines.append(f"class {record.name}(IntEnum):")
        lines.extend(docstring)
        for value in record.enumeration:
            if docstring or value is not record.enumeration[0]:
                lines.append("")
            variant = enum_variant_name(record.name, value.name)
            lines.append(f"    {variant} = {value.value}")
            lines.extend(format_docstring(value.description, 4))
        if not record.enumeration and not docstring:
            lines.append("    pass")
    else:
        py_type = to_python_type(record.ctype, record.size)
        lines.append(f"class {record.name}(ControlScalar[{py_type}]):")
        lines.extend(docstring or ["    pass"])

    lines.extend(["", "", f"_ENTRIES[{id_ref}] = {record.name}"])
    return lines


def _unique_records(records: Sequence[ControlRecord]) -> list[ControlRecord]:
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.name in seen:
            print(
                f"Warning: duplicate {record.name} ({record.vendor}) not emitted",
                file=sys.stderr,
            )
            continue
        seen.add(record.name)
        unique.append(record)
    return unique


_MAKE_DYN_TEMPLATE = '''\
def make_dyn({arg}: {id_enum}, value: ControlValue) -> ControlEntry:
    """Convert an untyped value into the typed entry registered for ``{arg}``."""
    try:
        entry = _ENTRIES[{arg}]
    except KeyError:
        raise ControlValueError(f"no entry registered for {{{arg}!r}}") from None
    return entry.from_control_value(value)'''


def generate_controls_source(
    records: Sequence[ControlRecord],
    kind: ControlsKind,
    version: Version,
    sources: Sequence[str] = (),
) -> str:
    """Render the controls.py / properties.py module for one version.

    Layout:
        - ``ControlId``/``PropertyId`` IntEnum, numeric ids taken from the
          wrapper's native constants, with a ``description()`` accessor.
        - One class per record: an IntEnum for enumerated records, a
          ``ControlScalar`` wrapper otherwise, decorated with the entry
          capability and registered in the dispatch table.
        - ``make_dyn`` dispatching an id and untyped value to its entry.

    Records of a non-default vendor are wrapped in ``if vendor_enabled(...)``
    blocks. Emission order is the record order; a name seen twice is only
    emitted the first time.
    """
    id_enum = kind.id_enum
    records = _unique_records(records)
    lines = format_file_header(f"libcamera {version} {kind.plural}", sources)
    lines += [
        "",
        "from enum import IntEnum",
        "",
        f"from ._sys import {kind.native_ids} as _ids",
        f"from .control import ControlEntry, ControlScalar, {kind.decorator}, vendor_enabled",
        "from .control_value import ControlValue, ControlValueError",
        "from .geometry import Point, Rectangle, Size  # noqa: F401",
        "",
        "",
        f"class {id_enum}(IntEnum):",
        f'    """Numeric ids of the libcamera {version} {kind.plural}."""',
        "",
    ]
    for record in records:
        member = [f"{record.name} = _ids.{to_c_type_name(record.name).upper()}"]
        lines.extend(_gated(record.vendor, member, indent=4))
    if records:
        lines.append("")
    lines += [
        "    def description(self) -> str:",
        "        return _DESCRIPTIONS[self.name]",
        "",
        "",
        "_DESCRIPTIONS: dict[str, str] = {",
    ]
    lines.extend(f"    {record.name!r}: {record.description!r}," for record in records)
    lines += [
        "}",
        "",
        f"_ENTRIES: dict[{id_enum}, type[ControlEntry]] = {{}}",
    ]
    for record in records:
        lines += ["", ""]
        lines.extend(_gated(record.vendor, _entry_lines(record, kind)))
    lines += ["", ""]
    arg = f"{kind.value}_id"
    lines.extend(_MAKE_DYN_TEMPLATE.format(arg=arg, id_enum=id_enum).splitlines())
    return "\n".join(lines) + "\n"


_PIXEL_FORMAT_TYPES = '''\
COLOUR_ENCODING_RGB = 0
COLOUR_ENCODING_YUV = 1
COLOUR_ENCODING_RAW = 2


class PixelFormatPlaneInfoData(NamedTuple):
    bytes_per_group: int
    vertical_sub_sampling: int


class PixelFormatInfoData(NamedTuple):
    name: str
    fourcc: int
    modifier: int
    bits_per_pixel: int
    colour_encoding: int
    packed: bool
    pixels_per_group: int
    planes: tuple[PixelFormatPlaneInfoData, ...]
    v4l2_formats: tuple[int, ...]'''


def _hex_tuple(values: Sequence[int]) -> str:
    items = [f"0x{value:08x}" for value in values]
    if len(items) == 1:
        return f"({items[0]},)"
    return f"({', '.join(items)})"


def format_pixel_format_row(info: PixelFormatInfo) -> list[str]:
    planes = list(info.planes[:PLANE_SLOTS])
    planes.extend([UNUSED_PLANE] * (PLANE_SLOTS - len(planes)))
    lines = [
        "    PixelFormatInfoData(",
        f'        name="{info.name}",',
        f"        fourcc=0x{info.fourcc:08x},",
        f"        modifier=0x{info.modifier:016x},",
        f"        bits_per_pixel={info.bits_per_pixel},",
        f"        colour_encoding=COLOUR_ENCODING_{info.colour_encoding.name},",
        f"        packed={info.packed},",
        f"        pixels_per_group={info.pixels_per_group},",
        "        planes=(",
    ]
    for plane in planes:
        lines.append(
            "            PixelFormatPlaneInfoData("
            f"bytes_per_group={plane.bytes_per_group}, "
            f"vertical_sub_sampling={plane.vertical_sub_sampling}),"
        )
    lines += [
        "        ),",
        f"        v4l2_formats={_hex_tuple(info.v4l2_formats)},",
        "    ),",
    ]
    return lines


def generate_pixel_format_info_source(
    infos: Sequence[PixelFormatInfo], version: Version
) -> str:
    """Render pixel_format_info.py: one PIXEL_FORMAT_INFO row per record.

    Rows keep the order the records were found in formats.cpp. The module
    only depends on the standard library.
    """
    lines = format_file_header(
        f"libcamera {version} pixel format info", (FORMATS_YAML, FORMATS_CPP)
    )
    lines += ["", "from typing import NamedTuple", "", ""]
    lines.extend(_PIXEL_FORMAT_TYPES.splitlines())
    lines += ["", "", "PIXEL_FORMAT_INFO: tuple[PixelFormatInfoData, ...] = ("]
    for info in infos:
        lines.extend(format_pixel_format_row(info))
    lines.append(")")
    return "\n".join(lines) + "\n"


# ===--- Artifact sets ---=== #


@dataclass(frozen=True)
class ArtifactStats:
    controls: int
    properties: int
    format_constants: int
    pixel_formats: int


@dataclass(frozen=True)
class ArtifactSet:
    """Everything written to versioned_files/<version> for one version.

    Attributes:
        version: The harvested libcamera version.
        files: Output filename -> contents: the three generated modules
            plus verbatim copies of the raw YAML schema files.
        stats: Record counts for the summary report.
    """

    version: Version
    files: dict[str, str]
    stats: ArtifactStats

    @property
    def line_count(self) -> int:
        return sum(contents.count("\n") for contents in self.files.values())


@dataclass(frozen=True)
class VersionedArtifactSet:
    """Artifact sets of a whole harvest, ascending by version.

    failures lists versions skipped under --keep-going with their error.
    """

    artifacts: tuple[ArtifactSet, ...]
    failures: tuple[tuple[Version, str], ...] = ()

    def __iter__(self) -> Iterator[ArtifactSet]:
        return iter(self.artifacts)

    def __len__(self) -> int:
        return len(self.artifacts)

    def versions(self) -> tuple[Version, ...]:
        return tuple(artifact.version for artifact in self.artifacts)


def tables_for_bundle(bundle: RawBundle, tables: ConstantTables) -> ConstantTables:
    """Let the headers shipped in the tree fill names the system headers lack."""
    if not bundle.headers:
        return tables
    tree_tables = build_constant_tables(
        bundle.headers.get(DRM_HEADER_NAME, ""),
        bundle.headers.get(V4L2_HEADER_NAME, ""),
    )
    return tables.with_fallback(tree_tables)


def render_artifact_set(
    version: Version, bundle: RawBundle, tables: ConstantTables
) -> ArtifactSet:
    version_tables = tables_for_bundle(bundle, tables)
    controls = parse_control_files(bundle.controls)
    properties = parse_control_files(bundle.properties)
    constants = parse_format_constants(bundle.formats_yaml, version_tables)
    infos = parse_pixel_format_info(bundle.formats_cpp, constants, version_tables)

    files = {**bundle.controls, **bundle.properties, FORMATS_YAML: bundle.formats_yaml}
    files[CONTROLS_FILE] = generate_controls_source(
        controls, ControlsKind.CONTROL, version, tuple(sorted(bundle.controls))
    )
    files[PROPERTIES_FILE] = generate_controls_source(
        properties, ControlsKind.PROPERTY, version, tuple(sorted(bundle.properties))
    )
    files[PIXEL_FORMAT_INFO_FILE] = generate_pixel_format_info_source(infos, version)

    return ArtifactSet(
        version=version,
        files=files,
        stats=ArtifactStats(
            controls=len(controls),
            properties=len(properties),
            format_constants=len(constants),
            pixel_formats=len(infos),
        ),
    )


def build_versioned_artifacts(
    bundles: Iterable[tuple[Version, RawBundle]],
    tables: ConstantTables,
    keep_going: bool = False,
) -> VersionedArtifactSet:
    """Fold harvested bundles into one VersionedArtifactSet.

    Bundles are sorted by version first, so the result does not depend on the
    order they were harvested in.

    Args:
        bundles: (version, raw bundle) pairs from harvest().
        tables: Constant tables from the system headers.
        keep_going: Skip a version whose extraction fails instead of aborting.

    Raises:
        ExtractionError: A version failed to extract and keep_going is False.
    """
    artifacts = []
    failures = []
    for version, bundle in sorted(bundles, key=lambda pair: pair[0]):
        print(f"  Generating: {version}")
        try:
            artifacts.append(render_artifact_set(version, bundle, tables))
        except ExtractionError as err:
            if not keep_going:
                raise ExtractionError(f"version {version}: {err}") from err
            print(f"Warning: skipping version {version}: {err}", file=sys.stderr)
            failures.append((version, str(err)))
    return VersionedArtifactSet(artifacts=tuple(artifacts), failures=tuple(failures))


# ===--- Artifact store ---=== #


class ArtifactStore(Protocol):
    def write(self, version: Version, files: Mapping[str, str]) -> None: ...

    def read(self, version: Version) -> dict[str, str]: ...

    def versions(self) -> list[Version]: ...


def _check_filename(name: str) -> None:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError(f"Invalid artifact filename: {name!r}")


class DirectoryArtifactStore:
    """Artifact sets stored as ``<root>/<version>/<filename>``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def version_dir(self, version: Version) -> Path:
        return self.root / str(version)

    def write(self, version: Version, files: Mapping[str, str]) -> None:
        directory = self.version_dir(version)
        directory.mkdir(parents=True, exist_ok=True)
        for name in sorted(files):
            _check_filename(name)
            (directory / name).write_text(files[name], encoding="utf-8")

    def read(self, version: Version) -> dict[str, str]:
        directory = self.version_dir(version)
        if not directory.is_dir():
            raise KeyError(version)
        return {
            path.name: path.read_text(encoding="utf-8")
            for path in sorted(directory.iterdir())
            if path.is_file()
        }

    def versions(self) -> list[Version]:
        if not self.root.is_dir():
            return []
        found = []
        for child in self.root.iterdir():
            if not child.is_dir():
                continue
            try:
                found.append(parse_version(child.name))
            except VersionError:
                continue
        return sorted(found)

    def clear(self) -> None:
        """Remove every version directory, leaving unrelated entries alone."""
        for version in self.versions():
            shutil.rmtree(self.version_dir(version))


class MemoryArtifactStore:
    def __init__(self) -> None:
        self._files: dict[Version, dict[str, str]] = {}

    def write(self, version: Version, files: Mapping[str, str]) -> None:
        for name in files:
            _check_filename(name)
        self._files[version] = dict(files)

    def read(self, version: Version) -> dict[str, str]:
        return dict(self._files[version])

    def versions(self) -> list[Version]:
        return sorted(self._files)


def persist_artifacts(store: ArtifactStore, artifacts: VersionedArtifactSet) -> None:
    for artifact in artifacts:
        store.write(artifact.version, artifact.files)


# ===--- Discovery ---=== #


def format_tag_table(decisions: Sequence[TagDecision], repo_dir: Path) -> str:
    """Return the --list-versions output.

    Output format:

        libcamera tags in libcamera-git:

          v0.4.0                 0.4.0     accepted
          v0.3.2                 0.3.2     skipped (below minimum 0.4.0)
          foo                    -         skipped (not a version tag)
    """
    lines = [f"libcamera tags in {repo_dir}:", ""]
    ordered = sorted(
        decisions,
        key=lambda d: (d.version is None, d.version or EMPTY_REPO_VERSION, d.ref),
    )
    for decision in ordered:
        name = decision.ref.rsplit("/", 1)[-1]
        version = str(decision.version) if decision.version is not None else "-"
        status = "accepted" if decision.accepted else f"skipped ({decision.reason})"
        lines.append(f"  {name:<22} {version:<9} {status}")
    accepted = sum(1 for d in decisions if d.accepted)
    lines.append("")
    lines.append(f"  {accepted} of {len(decisions)} tags accepted")
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig, repo: SourceRepository | None = None) -> None:
    if repo is None:
        git = GitRepository(config.repo_dir, config.repo_url)
        git.ensure_clone(fetch=config.fetch)
        repo = git
    decisions = [classify_tag(ref, config.min_version) for ref in repo.tags()]
    print(format_tag_table(decisions, config.repo_dir), end="")


# ===--- Generation pipeline ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation console report.

    Attributes:
        output_dir: Output directory path as string.
        rows: (version, stats, file count, line count) per written version.
        failures: Versions skipped under --keep-going with their error.
    """

    output_dir: str
    rows: tuple[tuple[Version, ArtifactStats, int, int], ...]
    failures: tuple[tuple[Version, str], ...]

    @property
    def total_files(self) -> int:
        return sum(row[2] for row in self.rows)

    @property
    def total_lines(self) -> int:
        return sum(row[3] for row in self.rows)


def build_generation_summary(
    artifacts: VersionedArtifactSet, output_dir: Path
) -> GenerationSummary:
    return GenerationSummary(
        output_dir=str(output_dir),
        rows=tuple(
            (a.version, a.stats, len(a.files), a.line_count) for a in artifacts
        ),
        failures=artifacts.failures,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    lines = ["libcamera metadata generated:", ""]
    lines.append(f"  Output:     {summary.output_dir}")
    if summary.rows:
        first, last = summary.rows[0][0], summary.rows[-1][0]
        lines.append(f"  Versions:   {len(summary.rows)} ({first} .. {last})")
    else:
        lines.append("  Versions:   0")
    lines.append("")
    lines.append(
        f"    {'Version':<10}{'Controls':>10}{'Properties':>12}"
        f"{'Formats':>10}{'Layouts':>10}"
    )
    for version, stats, _files, _lines in summary.rows:
        lines.append(
            f"    {str(version):<10}{stats.controls:>10}{stats.properties:>12}"
            f"{stats.format_constants:>10}{stats.pixel_formats:>10}"
        )
    if summary.failures:
        lines.append("")
        lines.append("  Skipped:")
        for version, reason in summary.failures:
            lines.append(f"    {version}: {reason}")
    lines.append("")
    lines.append(
        f"  Total: {summary.total_lines:,} lines across {summary.total_files} files"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


def run_generate(
    config: GenerateConfig, repo: SourceRepository | None = None
) -> GenerationSummary:
    """Execute harvest -> normalize -> emit -> persist for a GenerateConfig.

    Every version is rendered before anything is written, so a failing run
    leaves the previous output untouched.

    Raises:
        HarvestError: Clone, checkout or required-file failure.
        ExtractionError: Malformed schema entry or unresolved constant.
        OSError: Filesystem write failure.
    """
    print(f"Repository: {config.repo_dir}")
    if repo is None:
        git = GitRepository(config.repo_dir, config.repo_url)
        git.ensure_clone(fetch=config.fetch)
        repo = git

    tables = load_constant_tables(config.drm_header, config.v4l2_header)
    print(
        f"  Constants: {len(tables.fourcc)} fourcc, {len(tables.modifier)} modifiers, "
        f"{len(tables.legacy)} v4l2"
    )

    bundles = harvest(repo, config.min_version)
    print(f"  Harvested: {len(bundles)} versions")

    artifacts = build_versioned_artifacts(bundles, tables, keep_going=config.keep_going)

    store = DirectoryArtifactStore(config.output_dir)
    store.clear()
    persist_artifacts(store, artifacts)

    summary = build_generation_summary(artifacts, config.output_dir)
    print_generation_summary(summary)
    return summary


# ===--- Main ---=== #


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except (HarvestError, ExtractionError, OSError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
