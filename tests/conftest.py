import pytest
import pathlib

from compat_checker.descriptor import DescriptorCache
from compat_checker.symbol_store import SymbolStoreCache
from compat_test_utils import FakeToolchain


@pytest.fixture
def toolchain() -> FakeToolchain:
    """Provides a FakeToolchain with a couple of known C++ demanglings."""
    return FakeToolchain(
        demangled={
            "_ZN3Foo3barEv": "Foo::bar()",
            "_Z3bazi": "baz(int)",
        }
    )


@pytest.fixture
def data_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """Empty symbol database directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def stores(data_dir: pathlib.Path) -> SymbolStoreCache:
    return SymbolStoreCache(data_dir)


@pytest.fixture
def descriptors(toolchain: FakeToolchain) -> DescriptorCache:
    return DescriptorCache(toolchain)


@pytest.fixture
def app_root(tmp_path: pathlib.Path) -> pathlib.Path:
    """Unpacked native application directory with an appinfo.json."""
    root = tmp_path / "pkg" / "usr" / "palm" / "applications" / "com.example.app"
    (root / "lib").mkdir(parents=True)
    (root / "appinfo.json").write_text(
        '{"id": "com.example.app", "version": "1.2.3", "type": "native", "main": "app"}'
    )
    return root
