import hashlib
import io
import json
import tarfile
from pathlib import Path

import pytest

import libddprof_packaging as packaging

REPO_ROOT = Path(__file__).resolve().parents[1]
LINUX_PLATFORMS = ("x86_64-linux", "x86_64-linux-musl", "aarch64-linux", "aarch64-linux-musl")


def make_tarball(members, symlinks=None):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in members.items():
            if content is None:
                info = tarfile.TarInfo(name)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                archive.addfile(info)
                continue
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(content))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            archive.addfile(info)
    return buffer.getvalue()


def sha256_hex(data):
    return hashlib.sha256(data).hexdigest()


def variant_tarball(platform):
    top = f"libddprof-{platform}"
    return make_tarball(
        {
            f"{top}/": None,
            f"{top}/include/ddprof/ffi.h": b"/* ffi header */\n",
            f"{top}/lib/libddprof_ffi.so": f"ELF {platform}".encode(),
            f"{top}/lib/libddprof_ffi.a": f"static {platform}".encode(),
            f"{top}/lib/pkgconfig/ddprof_ffi_with_rpath.pc": f"prefix={platform}\n".encode(),
            f"{top}/lib/pkgconfig/ddprof_ffi.pc": b"prefix=/\n",
        }
    )


def config_data(archives, platforms=LINUX_PLATFORMS, bundles=None):
    variants = [
        {
            "file": f"libddprof-{platform}.tar.gz",
            "sha256": sha256_hex(archives[platform]),
            "platform": platform,
        }
        for platform in platforms
    ]
    if bundles is None:
        bundles = [
            {"platform": None, "sources": list(LINUX_PLATFORMS)},
            {"platform": "x86_64-linux", "sources": ["x86_64-linux", "x86_64-linux-musl"]},
            {"platform": "aarch64-linux", "sources": ["aarch64-linux", "aarch64-linux-musl"]},
        ]
    return {
        "library": "libddprof",
        "lib_version": "1.2.3",
        "version": "1.2.3.beta1",
        "release_host": "https://example.test",
        "repository": "DataDog/libddprof",
        "releases": {"1.2.3": variants},
        "excluded_files": ["libddprof_ffi.a", "ddprof_ffi.pc"],
        "bundles": bundles,
        "gemspec": {"summary": "test gem", "authors": ["Datadog, Inc."]},
    }


class FakeRelease:
    def __init__(self, archives):
        self.archives = dict(archives)
        self.calls = []

    def __call__(self, url, destination):
        self.calls.append(url)
        file = url.rsplit("/", 1)[-1]
        platform = file[len("libddprof-") : -len(".tar.gz")]
        Path(destination).write_bytes(self.archives[platform])


class FakeGemBuild:
    def __init__(self):
        self.calls = []

    def __call__(self, command, cwd=None, env=None):
        staged = sorted(
            path.relative_to(cwd).as_posix() for path in Path(cwd).rglob("*") if path.is_file()
        )
        self.calls.append({"command": command, "cwd": cwd, "env": env, "staged": staged})
        name = f"{env['LIBDDPROF_GEM_NAME']}-{env['LIBDDPROF_GEM_VERSION']}"
        if env["LIBDDPROF_GEM_PLATFORM"]:
            name += f"-{env['LIBDDPROF_GEM_PLATFORM']}"
        (Path(cwd) / f"{name}.gem").write_bytes(b"gem")


@pytest.fixture
def archives():
    return {platform: variant_tarball(platform) for platform in LINUX_PLATFORMS}


@pytest.fixture
def write_config(tmp_path):
    def write(data, name="release.json"):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return write


@pytest.fixture
def config(archives, write_config):
    return packaging.load_config(write_config(config_data(archives)))


@pytest.fixture
def make_tree(tmp_path):
    def make(platform, files, archive_name=None):
        root = tmp_path / "vendor" / "libddprof-1.2.3" / platform
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        archive_name = archive_name or f"libddprof-{platform}.tar.gz"
        variant = packaging.VariantDescriptor(
            file=archive_name, sha256="0" * 64, platform=platform
        )
        return packaging.ExtractedTree(
            root=root, variant=variant, version="1.2.3", archive=root / archive_name
        )

    return make
