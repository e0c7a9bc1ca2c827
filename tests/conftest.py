import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import metagen  # noqa: E402

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"


def read_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


class FakeRepository:
    """In-memory stand-in for a libcamera clone: one file tree per tag."""

    def __init__(self, trees: dict[str, dict[str, str]]):
        self.trees = trees
        self.current: str | None = None
        self.checkouts: list[str] = []

    def tags(self) -> list[str]:
        return list(self.trees)

    def checkout(self, ref: str) -> None:
        if ref not in self.trees:
            raise metagen.HarvestError(f"unknown ref {ref}")
        self.current = ref
        self.checkouts.append(ref)

    def _tree(self) -> dict[str, str]:
        assert self.current is not None, "checkout() must run first"
        return self.trees[self.current]

    def read_dir(self, relpath: str) -> list[str]:
        prefix = relpath.rstrip("/") + "/"
        return sorted(
            path[len(prefix):]
            for path in self._tree()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        )

    def exists(self, relpath: str) -> bool:
        return relpath in self._tree()

    def read_file(self, relpath: str) -> str:
        try:
            return self._tree()[relpath]
        except KeyError as err:
            raise metagen.HarvestError(f"Missing file in checkout: {relpath}") from err


@pytest.fixture
def fixture_text() -> Callable[[str], str]:
    return read_fixture


@pytest.fixture
def tables() -> metagen.ConstantTables:
    return metagen.build_constant_tables(
        read_fixture("drm_fourcc.h"), read_fixture("videodev2.h")
    )


@pytest.fixture
def make_tree() -> Callable[..., dict[str, str]]:
    def _make_tree(**overrides: str | None) -> dict[str, str]:
        tree = {
            "src/libcamera/control_ids_core.yaml": read_fixture("control_ids_core.yaml"),
            "src/libcamera/control_ids_rpi.yaml": read_fixture("control_ids_rpi.yaml"),
            "src/libcamera/property_ids_core.yaml": read_fixture(
                "property_ids_core.yaml"
            ),
            "src/libcamera/formats.yaml": read_fixture("formats.yaml"),
            "src/libcamera/formats.cpp": read_fixture("formats.cpp"),
            "src/libcamera/meson.build": "# not a schema file\n",
        }
        for name, contents in overrides.items():
            path = f"src/libcamera/{name.replace('__', '.')}"
            if contents is None:
                tree.pop(path, None)
            else:
                tree[path] = contents
        return tree

    return _make_tree


@pytest.fixture
def make_repo(make_tree: Callable[..., dict[str, str]]) -> Callable[..., FakeRepository]:
    def _make_repo(*refs: str, trees: dict[str, dict[str, str]] | None = None):
        all_trees = {ref: make_tree() for ref in refs}
        all_trees.update(trees or {})
        return FakeRepository(all_trees)

    return _make_repo


@pytest.fixture
def bundle(make_repo: Callable[..., FakeRepository]) -> metagen.RawBundle:
    repo = make_repo("refs/tags/v0.4.0")
    repo.checkout("refs/tags/v0.4.0")
    return metagen.read_raw_bundle(repo)


@pytest.fixture
def make_generate_config(tmp_path: Path) -> Callable[..., metagen.GenerateConfig]:
    def _make_generate_config(**overrides: object) -> metagen.GenerateConfig:
        base: dict[str, object] = {
            "repo_dir": tmp_path / "libcamera-git",
            "repo_url": "https://example.invalid/libcamera.git",
            "output_dir": tmp_path / "versioned_files",
            "min_version": metagen.MIN_SUPPORTED_VERSION,
            "drm_header": FIXTURES_DIR / "drm_fourcc.h",
            "v4l2_header": FIXTURES_DIR / "videodev2.h",
            "keep_going": False,
            "fetch": False,
        }
        base.update(overrides)
        return metagen.GenerateConfig(**base)

    return _make_generate_config
