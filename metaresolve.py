"""Select and install the versioned libcamera metadata for a consumer build.

Picks the artifact set in versioned_files/ that matches the installed
libcamera, copies its generated modules into the build output directory and
scrapes vendor_features.py and formats.py from the installed headers.

Usage:
    libcamera-meta-resolve --versioned-files versioned_files --out-dir build/
"""

import argparse
import os
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import metagen
from metagen import (
    ConfigError,
    ExtractionError,
    Group,
    Token,
    Version,
    VersionError,
    format_file_header,
    group_tokens,
    iter_defines,
    pack_fourcc,
    pack_modifier,
    parse_c_int,
    parse_char_literal,
    parse_version,
    parse_version_option,
    split_items,
    tokenize_c,
    validate_path_exists,
)

DEFAULT_VERSIONED_FILES = metagen.DEFAULT_OUTPUT_DIR
OUT_DIR_ENV = "OUT_DIR"
POLICY_ENV = "LIBCAMERA_SEMVER_POLICY"
VERSION_ENV = "LIBCAMERA_VERSION"
PKG_CONFIG_NAMES = ("libcamera", "camera")

CONTROL_IDS_HEADER = "libcamera/control_ids.h"
FORMATS_HEADER = "libcamera/formats.h"
VENDOR_FEATURES_FILE = "vendor_features.py"
FORMATS_FILE = "formats.py"
VENDOR_FEATURE_PREFIX = "LIBCAMERA_HAS_"


class ResolutionError(RuntimeError):
    """No usable artifact set or libcamera installation was found."""

    def __init__(self, message: str, candidates: Sequence[Version] = ()):
        super().__init__(message)
        self.candidates = tuple(candidates)


# ===--- Compatibility policy ---=== #


class CompatPolicy(Enum):
    EXACT = "exact"
    CARET = "caret"


def next_breaking(version: Version) -> Version:
    """Return the first version that is no longer caret-compatible.

    ^1.2.3 allows <2.0.0, ^0.2.3 allows <0.3.0 and ^0.0.3 allows <0.0.4.
    """
    if version.major > 0:
        return Version(version.major + 1, 0, 0)
    if version.minor > 0:
        return Version(0, version.minor + 1, 0)
    return Version(0, 0, version.patch + 1)


def matches(policy: CompatPolicy, candidate: Version, runtime: Version) -> bool:
    if policy is CompatPolicy.EXACT:
        return candidate == runtime
    return candidate <= runtime < next_breaking(candidate)


def parse_candidates(names: Iterable[str]) -> list[Version]:
    candidates = set()
    for name in names:
        try:
            candidates.add(parse_version(name))
        except VersionError:
            continue
    return sorted(candidates)


def format_no_match(runtime: Version, candidates: Sequence[Version]) -> str:
    lines = [
        f"Unsupported version of libcamera detected: {runtime}",
        "supported versions are: ",
    ]
    lines.extend(f"\t{candidate}" for candidate in candidates)
    return "\n".join(lines)


def select_version(
    runtime: Version, names: Iterable[str], policy: CompatPolicy
) -> Version:
    """Return the highest candidate compatible with ``runtime``.

    Args:
        runtime: The installed libcamera version.
        names: Candidate directory names; names that are not versions are
            ignored.
        policy: exact or caret compatibility.

    Raises:
        ResolutionError: No candidate matches. The message lists every
            candidate.
    """
    candidates = parse_candidates(names)
    compatible = [c for c in candidates if matches(policy, c, runtime)]
    if not compatible:
        raise ResolutionError(format_no_match(runtime, candidates), candidates)
    return compatible[-1]


# ===--- Installed libcamera ---=== #


@dataclass(frozen=True)
class LibcameraInstall:
    version: Version
    include_paths: tuple[Path, ...]


def _pkg_config(*args: str) -> str:
    result = subprocess.run(
        ["pkg-config", *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def _include_paths(cflags: str) -> tuple[Path, ...]:
    return tuple(
        Path(flag[2:]) for flag in cflags.split() if flag.startswith("-I") and flag[2:]
    )


def probe_libcamera(version_override: str | None = None) -> LibcameraInstall:
    """Ask pkg-config for the installed libcamera version and include paths.

    The legacy ``camera`` package name is tried when ``libcamera`` is not
    found. ``version_override`` (or LIBCAMERA_VERSION) replaces the version
    pkg-config reports.

    Raises:
        ResolutionError: pkg-config is missing or knows neither package.
    """
    failures = []
    for name in PKG_CONFIG_NAMES:
        try:
            modversion = _pkg_config("--modversion", name)
            cflags = _pkg_config("--cflags-only-I", name)
        except FileNotFoundError as err:
            raise ResolutionError("pkg-config executable not found on PATH") from err
        except subprocess.CalledProcessError as err:
            failures.append(f"{name}: {(err.stderr or '').strip()}")
            continue

        raw_version = version_override or os.environ.get(VERSION_ENV) or modversion
        try:
            version = parse_version(raw_version)
        except VersionError as err:
            raise ResolutionError(
                f"Cannot parse libcamera version {raw_version!r}"
            ) from err
        return LibcameraInstall(version=version, include_paths=_include_paths(cflags))

    raise ResolutionError(
        "libcamera not found by pkg-config:\n  " + "\n  ".join(failures)
    )


# ===--- Header scrapers ---=== #


def generate_vendor_features_source(control_ids_h: str) -> str:
    """Render vendor_features.py from the installed control_ids.h.

    Each ``#define LIBCAMERA_HAS_<X>`` becomes ``LIBCAMERA_HAS_<X>: bool =
    True`` in header order; features the header does not define are simply
    absent from the module.
    """
    features: list[str] = []
    for name, _body in iter_defines(control_ids_h):
        if name.startswith(VENDOR_FEATURE_PREFIX) and name not in features:
            features.append(name)

    lines = format_file_header("libcamera vendor features", (CONTROL_IDS_HEADER,))
    lines.append("")
    lines.extend(f"{name}: bool = True" for name in features)
    lines.append("")
    lines.append(f"VENDOR_FEATURES: frozenset[str] = frozenset({sorted(features)!r})")
    return "\n".join(lines) + "\n"


def _call_args(items: Sequence, callee: str) -> list[list] | None:
    for index, item in enumerate(items[:-1]):
        following = items[index + 1]
        if (
            isinstance(item, Token)
            and item.text == callee
            and isinstance(following, Group)
            and following.open == "("
        ):
            return split_items(following.items)
    return None


def _fourcc_value(items: Sequence) -> int:
    args = _call_args(items, "__fourcc")
    if args is None or len(args) != 4:
        raise ExtractionError("expected __fourcc(a, b, c, d)")
    chars = []
    for arg in args:
        if len(arg) != 1 or not isinstance(arg[0], Token) or arg[0].kind != "char":
            raise ExtractionError("__fourcc arguments must be character literals")
        chars.append(parse_char_literal(arg[0].text))
    # A trailing "| ..." marks the big-endian variant.
    big_endian = any(
        isinstance(item, Token) and item.text == "|" for item in items
    )
    return pack_fourcc(*chars, big_endian=big_endian)


def _modifier_value(items: Sequence) -> int:
    args = _call_args(items, "__mod")
    if args is None:
        return 0
    if len(args) != 2 or any(
        len(arg) != 1 or not isinstance(arg[0], Token) or arg[0].kind != "number"
        for arg in args
    ):
        raise ExtractionError("expected __mod(vendor, modifier)")
    return pack_modifier(parse_c_int(args[0][0].text), parse_c_int(args[1][0].text))


def parse_formats_header(formats_h: str) -> list[tuple[str, int, int]]:
    """Return (name, fourcc, modifier) for each ``PixelFormat`` constant."""
    tree = group_tokens(tokenize_c(formats_h))
    found: list[tuple[str, int, int]] = []
    _collect_formats(tree, found)
    return found


def _collect_formats(items: Sequence, found: list[tuple[str, int, int]]) -> None:
    for index, item in enumerate(items):
        if isinstance(item, Group):
            _collect_formats(item.items, found)
            continue
        if not (isinstance(item, Token) and item.text == "PixelFormat"):
            continue
        if index + 2 >= len(items):
            continue
        name, body = items[index + 1], items[index + 2]
        if not (isinstance(name, Token) and name.kind == "ident"):
            continue
        if not (isinstance(body, Group) and body.open == "{"):
            continue
        parts = split_items(body.items)
        if not parts:
            continue
        try:
            fourcc = _fourcc_value(parts[0])
            modifier = _modifier_value(parts[1]) if len(parts) > 1 else 0
        except ExtractionError as err:
            raise ExtractionError(f"{FORMATS_HEADER}: {name.text}: {err}") from err
        found.append((name.text, fourcc, modifier))


def generate_formats_source(formats_h: str) -> str:
    lines = format_file_header("libcamera pixel formats", (FORMATS_HEADER,))
    lines += ["", "from .pixel_format import PixelFormat", ""]
    for name, fourcc, modifier in parse_formats_header(formats_h):
        lines.append(f"{name} = PixelFormat(0x{fourcc:08x}, 0x{modifier:016x})")
    return "\n".join(lines) + "\n"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class ResolveConfig:
    versioned_files: Path
    out_dir: Path
    policy: CompatPolicy = CompatPolicy.EXACT
    libcamera_version: Version | None = None
    include_dir: Path | None = None


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Install the libcamera metadata matching the installed libcamera"
    )

    parser.add_argument("--versioned-files", type=Path, default=DEFAULT_VERSIONED_FILES)
    parser.add_argument("--out-dir", type=Path, default=None)
    parser.add_argument("--policy", type=str, default=None)
    parser.add_argument("--libcamera-version", type=str, default=None)
    parser.add_argument("--include-dir", type=Path, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(
    args: argparse.Namespace, environ: dict[str, str] | None = None
) -> ResolveConfig:
    env = os.environ if environ is None else environ

    out_dir = args.out_dir
    if out_dir is None and env.get(OUT_DIR_ENV):
        out_dir = Path(env[OUT_DIR_ENV])
    if out_dir is None:
        raise ConfigError(
            "MISSING_OUT_DIR",
            "No output directory: pass --out-dir or set OUT_DIR.",
            "For example: --out-dir build/libcamera_meta",
        )

    raw_policy = args.policy or env.get(POLICY_ENV) or CompatPolicy.EXACT.value
    try:
        policy = CompatPolicy(raw_policy.strip().lower())
    except ValueError as err:
        raise ConfigError(
            "INVALID_POLICY",
            f"Unknown compatibility policy: {raw_policy}",
            "Use 'exact' or 'caret'.",
        ) from err

    libcamera_version = None
    if args.libcamera_version is not None:
        libcamera_version = parse_version_option(
            args.libcamera_version, "--libcamera-version"
        )
    elif env.get(VERSION_ENV):
        libcamera_version = parse_version_option(env[VERSION_ENV], VERSION_ENV)

    validate_path_exists(
        args.versioned_files,
        "--versioned-files",
        "Generate the artifact sets first:\n"
        "  libcamera-meta-gen --output-dir versioned_files",
    )
    if args.include_dir is not None:
        validate_path_exists(args.include_dir, "--include-dir")

    return ResolveConfig(
        versioned_files=args.versioned_files,
        out_dir=out_dir,
        policy=policy,
        libcamera_version=libcamera_version,
        include_dir=args.include_dir,
    )


def build_config(
    argv: list[str] | None = None, environ: dict[str, str] | None = None
) -> ResolveConfig:
    return validate_config(parse_args(argv), environ)


# ===--- Resolve pipeline ---=== #


@dataclass(frozen=True)
class ResolveResult:
    runtime: Version
    selected: Version
    policy: CompatPolicy
    written: tuple[Path, ...]


def _find_header(include_paths: Sequence[Path], relpath: str) -> Path:
    for include in include_paths:
        candidate = include / relpath
        if candidate.is_file():
            return candidate
    searched = ", ".join(str(p) for p in include_paths) or "(none)"
    raise ResolutionError(f"{relpath} not found in include paths: {searched}")


def find_install(config: ResolveConfig) -> LibcameraInstall:
    if config.libcamera_version is not None and config.include_dir is not None:
        return LibcameraInstall(config.libcamera_version, (config.include_dir,))
    override = None
    if config.libcamera_version is not None:
        override = str(config.libcamera_version)
    install = probe_libcamera(override)
    if config.include_dir is not None:
        return LibcameraInstall(install.version, (config.include_dir,))
    return install


def run_resolve(
    config: ResolveConfig, install: LibcameraInstall | None = None
) -> ResolveResult:
    """Copy the matching artifact set and write the header-derived modules.

    Raises:
        ResolutionError: No compatible artifact set, a generated file or a
            required header is missing, or libcamera cannot be found.
        ExtractionError: formats.h could not be parsed.
    """
    if install is None:
        install = find_install(config)
    print(f"libcamera: {install.version}")

    names = [p.name for p in config.versioned_files.iterdir() if p.is_dir()]
    selected = select_version(install.version, names, config.policy)
    print(f"  Selected: {selected} ({config.policy.value})")

    source_dir = config.versioned_files / str(selected)
    config.out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name in metagen.GENERATED_FILES:
        source = source_dir / name
        if not source.is_file():
            raise ResolutionError(f"Artifact set {selected} is missing {name}")
        target = config.out_dir / name
        shutil.copyfile(source, target)
        written.append(target)

    control_ids_h = _find_header(install.include_paths, CONTROL_IDS_HEADER)
    target = config.out_dir / VENDOR_FEATURES_FILE
    target.write_text(
        generate_vendor_features_source(control_ids_h.read_text(encoding="utf-8")),
        encoding="utf-8",
    )
    written.append(target)

    formats_h = _find_header(install.include_paths, FORMATS_HEADER)
    target = config.out_dir / FORMATS_FILE
    target.write_text(
        generate_formats_source(formats_h.read_text(encoding="utf-8")),
        encoding="utf-8",
    )
    written.append(target)

    for path in written:
        print(f"  Wrote: {path}")
    return ResolveResult(
        runtime=install.version,
        selected=selected,
        policy=config.policy,
        written=tuple(written),
    )


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
        run_resolve(config)
    except (ResolutionError, ExtractionError, OSError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
