#!/usr/bin/env python3
import argparse
import filecmp
import hashlib
import http.client
import json
import os
import re
import shutil
import subprocess
import sys
import tarfile
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType

CONFIG_FILE = "release.json"
GEMSPEC_TEMPLATE = "libddprof-template.gemspec"
USER_AGENT = "libddprof-packaging"
RUBYGEMS_VERSIONS_URL = "https://rubygems.org/api/v1/versions/{name}.json"
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
PARTIAL_SUFFIX = ".part"
PARTIAL_RE = re.compile(r"^\..+\.[a-z0-9_]{8}\.part$")
CHUNK_SIZE = 1024 * 1024
STAGES = ("fetch", "extract", "package", "publish")


def log(message):
    print(message, flush=True)


def fail(message):
    print(f"ERROR: {message}", file=sys.stderr, flush=True)
    sys.exit(1)


class PackagingError(Exception):
    pass


class ManifestError(PackagingError):
    pass


class UnknownVersion(PackagingError):
    def __init__(self, version, known):
        known_list = ", ".join(sorted(known)) or "none"
        super().__init__(f"Unknown release version {version} (known: {known_list})")
        self.version = version


class CorruptDownload(PackagingError):
    def __init__(self, version, variant, actual):
        super().__init__(
            f"Downloaded {variant.file} for {variant.platform} (version {version}) "
            f"is corrupt: expected sha256 {variant.sha256}, got {actual}"
        )
        self.version = version
        self.variant = variant
        self.actual = actual


class PreconditionViolated(PackagingError):
    pass


class UnsafeArchive(PackagingError):
    pass


class ConflictingArtifact(PackagingError):
    def __init__(self, relative_path, first_platform, second_platform):
        super().__init__(
            f"Conflicting content for {relative_path} between "
            f"{first_platform} and {second_platform}"
        )
        self.relative_path = relative_path
        self.platforms = (first_platform, second_platform)


class BundlePlanError(PackagingError):
    pass


class PublishPrecondition(PackagingError):
    pass


@dataclass(frozen=True)
class VariantDescriptor:
    file: str
    sha256: str
    platform: str


@dataclass(frozen=True)
class DownloadedArtifact:
    path: Path
    variant: VariantDescriptor
    version: str
    verified: bool


@dataclass(frozen=True)
class ExtractedTree:
    root: Path
    variant: VariantDescriptor
    version: str
    archive: Path


@dataclass(frozen=True)
class SelectedFile:
    path: Path
    root: Path
    platform: str

    @property
    def relative_path(self):
        return self.path.relative_to(self.root).as_posix()


@dataclass(frozen=True)
class BundlePlanEntry:
    platform: str | None
    sources: tuple
    enable_env: str | None = None
    publish: bool = True

    @property
    def label(self):
        return self.platform or "fallback"


@dataclass(frozen=True)
class BundleFile:
    relative_path: str
    source: Path
    platform: str


@dataclass(frozen=True)
class Bundle:
    name: str
    version: str
    lib_version: str
    platform: str | None
    files: tuple
    publish: bool
    metadata: MappingProxyType

    @property
    def label(self):
        return self.platform or "fallback"

    @property
    def gem_file_name(self):
        if self.platform:
            return f"{self.name}-{self.version}-{self.platform}.gem"
        return f"{self.name}-{self.version}.gem"

    def destination(self, item):
        return f"vendor/{self.name}-{self.lib_version}/{item.relative_path}"

    def destinations(self):
        return [self.destination(item) for item in self.files]


@dataclass(frozen=True)
class PublishReceipt:
    bundle: Bundle
    gem_path: Path
    status: str
    error: str | None = None


class ReleaseManifest:
    def __init__(self, releases):
        self._releases = MappingProxyType(
            {version: tuple(variants) for version, variants in releases.items()}
        )

    @property
    def versions(self):
        return tuple(self._releases)

    def lookup(self, version):
        try:
            return self._releases[version]
        except KeyError:
            raise UnknownVersion(version, self._releases) from None


@dataclass(frozen=True)
class PackagingConfig:
    library: str
    lib_version: str
    version: str
    release_host: str
    repository: str
    manifest: ReleaseManifest
    excluded_files: frozenset
    bundles: tuple
    gemspec: MappingProxyType

    def release_url(self, version, file):
        host = self.release_host.rstrip("/")
        return f"{host}/{self.repository}/releases/download/v{version}/{file}"

    def release_directory(self, vendor_dir, version):
        return Path(vendor_dir) / f"{self.library}-{version}"


def require_string(mapping, key, where):
    value = mapping.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ManifestError(f"{where} must include a non-empty {key}")
    return value.strip()


def is_plain_name(value):
    return value not in (".", "..") and "/" not in value and "\\" not in value


def parse_releases(data, source):
    if not isinstance(data, dict) or not data:
        raise ManifestError(f"{source} releases must be an object of version -> variants")
    releases = {}
    for version, variants in data.items():
        if not version.strip():
            raise ManifestError(f"{source} release versions must not be empty")
        if not isinstance(variants, list) or not variants:
            raise ManifestError(f"{source} release {version} must list at least one variant")
        parsed = []
        seen = set()
        for index, value in enumerate(variants, start=1):
            where = f"{source} release {version} variant #{index}"
            if not isinstance(value, dict):
                raise ManifestError(f"{where} must be an object")
            file = require_string(value, "file", where)
            sha256 = require_string(value, "sha256", where).lower()
            platform = require_string(value, "platform", where)
            if not SHA256_RE.match(sha256):
                raise ManifestError(f"{where} sha256 must be 64 hex digits, got {sha256}")
            if not is_plain_name(file):
                raise ManifestError(f"{where} file must be a plain file name, got {file}")
            if not is_plain_name(platform):
                raise ManifestError(f"{where} platform must not contain path separators")
            if platform in seen:
                raise ManifestError(f"{source} release {version} lists {platform} twice")
            seen.add(platform)
            parsed.append(VariantDescriptor(file=file, sha256=sha256, platform=platform))
        releases[version] = parsed
    return ReleaseManifest(releases)


def parse_bundle_plan(data, source):
    if not isinstance(data, list) or not data:
        raise BundlePlanError(f"{source} bundles must be a non-empty array")
    entries = []
    labels = set()
    for index, value in enumerate(data, start=1):
        where = f"{source} bundle #{index}"
        if not isinstance(value, dict) or "platform" not in value:
            raise BundlePlanError(f"{where} must be an object with a platform (null for fallback)")
        platform = value["platform"]
        if platform is not None and (not isinstance(platform, str) or not platform.strip()):
            raise BundlePlanError(f"{where} platform must be a non-empty string or null")
        sources = value.get("sources")
        if not isinstance(sources, list) or not sources or not all(
            isinstance(item, str) and item for item in sources
        ):
            raise BundlePlanError(f"{where} sources must be a non-empty array of platform tags")
        enable_env = value.get("enable_env")
        if enable_env is not None and (not isinstance(enable_env, str) or not enable_env):
            raise BundlePlanError(f"{where} enable_env must be an environment variable name")
        publish = value.get("publish", True)
        if not isinstance(publish, bool):
            raise BundlePlanError(f"{where} publish must be true or false")
        entry = BundlePlanEntry(
            platform=platform.strip() if platform else None,
            sources=tuple(dict.fromkeys(sources)),
            enable_env=enable_env,
            publish=publish,
        )
        if entry.label in labels:
            raise BundlePlanError(f"{source} lists bundle {entry.label} twice")
        labels.add(entry.label)
        entries.append(entry)
    return tuple(entries)


def load_config(path):
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ManifestError(f"Missing {path}") from None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Invalid JSON in {path}: {exc}") from None
    if not isinstance(data, dict):
        raise ManifestError(f"{path.name} must be a JSON object")
    source = path.name
    excluded = data.get("excluded_files", [])
    if not isinstance(excluded, list) or not all(isinstance(item, str) for item in excluded):
        raise ManifestError(f"{source} excluded_files must be an array of strings")
    gemspec = data.get("gemspec", {})
    if not isinstance(gemspec, dict):
        raise ManifestError(f"{source} gemspec must be an object")
    return PackagingConfig(
        library=require_string(data, "library", source),
        lib_version=require_string(data, "lib_version", source),
        version=require_string(data, "version", source),
        release_host=require_string(data, "release_host", source),
        repository=require_string(data, "repository", source),
        manifest=parse_releases(data.get("releases"), source),
        excluded_files=frozenset(excluded),
        bundles=parse_bundle_plan(data.get("bundles"), source),
        gemspec=MappingProxyType(dict(gemspec)),
    )


def sha256_of(path):
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def request_headers(accept):
    headers = {
        "Accept": accept,
        "User-Agent": USER_AGENT,
    }
    token = os.getenv("GITHUB_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def download_asset(url, destination):
    req = urllib.request.Request(url, headers=request_headers("application/octet-stream"))
    with urllib.request.urlopen(req) as resp, open(destination, "wb") as handle:
        shutil.copyfileobj(resp, handle)


def partial_path(directory, name):
    fd, temp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=PARTIAL_SUFFIX, dir=directory)
    os.close(fd)
    return Path(temp_name)


def remove_partials(directory):
    for stale in Path(directory).rglob(f".*{PARTIAL_SUFFIX}"):
        if PARTIAL_RE.match(stale.name) and stale.is_file():
            stale.unlink()


def artifact_path(config, vendor_dir, version, variant):
    return config.release_directory(vendor_dir, version) / variant.platform / variant.file


def fetch_variant(config, version, variant, vendor_dir, download=download_asset):
    target_file = artifact_path(config, vendor_dir, version, variant)
    target_file.parent.mkdir(parents=True, exist_ok=True)

    if target_file.is_file():
        existing = sha256_of(target_file)
        if existing == variant.sha256:
            log(f"FETCH {variant.platform}: {target_file} matches the expected sha256, skip download")
            return DownloadedArtifact(
                path=target_file, variant=variant, version=version, verified=True
            )
        log(
            f"FETCH {variant.platform}: {target_file} has sha256 {existing} "
            f"but expected {variant.sha256}, downloading it again"
        )

    url = config.release_url(version, variant.file)
    log(f"FETCH {variant.platform}: {url} -> {target_file}")
    temp_path = partial_path(target_file.parent, variant.file)
    try:
        try:
            download(url, temp_path)
        except (OSError, http.client.HTTPException) as exc:
            raise PackagingError(
                f"Failed to download {url} for {variant.platform} (version {version}): {exc}"
            ) from exc
        actual = sha256_of(temp_path)
        if actual != variant.sha256:
            raise CorruptDownload(version, variant, actual)
        os.replace(temp_path, target_file)
    finally:
        if temp_path.exists():
            temp_path.unlink()

    log(f"FETCH {variant.platform}: verified sha256 {variant.sha256}")
    return DownloadedArtifact(path=target_file, variant=variant, version=version, verified=True)


def fetch_all(config, version, vendor_dir, download=download_asset):
    variants = config.manifest.lookup(version)
    return [
        fetch_variant(config, version, variant, vendor_dir, download=download)
        for variant in variants
    ]


def normalize_rel_path(value):
    value = value.replace("\\", "/").lstrip("/")
    parts = []
    for part in value.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def write_member(archive, member, target):
    handle = archive.extractfile(member)
    if handle is None:
        return False
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = partial_path(target.parent, target.name)
    try:
        with handle as src, open(temp_path, "wb") as dst:
            shutil.copyfileobj(src, dst)
        if member.mode:
            os.chmod(temp_path, member.mode & 0o777)
        os.replace(temp_path, target)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return True


def extract_artifact(artifact):
    platform = artifact.variant.platform
    if not artifact.verified:
        raise PreconditionViolated(
            f"Refusing to extract unverified artifact {artifact.path} "
            f"({platform}, version {artifact.version})"
        )
    destination = artifact.path.parent
    remove_partials(destination)
    log(f"EXTRACT {platform}: {artifact.path} -> {destination}")

    extracted = 0
    with tarfile.open(artifact.path, "r:gz") as archive:
        for member in archive:
            rel = normalize_rel_path(member.name)
            if rel is None:
                raise UnsafeArchive(
                    f"{artifact.path}: member {member.name} escapes the extraction directory"
                )
            if not rel:
                continue
            target = destination / rel
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                log(f"EXTRACT {platform}: skip {member.name} (not a regular file)")
                continue
            if target == artifact.path:
                raise UnsafeArchive(
                    f"{artifact.path}: member {member.name} would overwrite the archive"
                )
            if write_member(archive, member, target):
                extracted += 1

    log(f"EXTRACT {platform}: {extracted} files")
    return ExtractedTree(
        root=destination,
        variant=artifact.variant,
        version=artifact.version,
        archive=artifact.path,
    )


def extract_all(artifacts):
    return [extract_artifact(artifact) for artifact in artifacts]


def select_files(trees, excluded_files):
    excluded = set(excluded_files)
    selected = []
    for tree in trees:
        for path in tree.root.rglob("*"):
            if path.is_symlink() or not path.is_file():
                continue
            if path.name in excluded:
                continue
            if path == tree.archive:
                continue
            selected.append(
                SelectedFile(path=path, root=tree.root, platform=tree.variant.platform)
            )
    selected.sort(key=lambda item: item.path.as_posix())
    return tuple(selected)


def union_file_sets(file_sets):
    merged = {}
    for file_set in file_sets:
        for item in file_set:
            rel = item.relative_path
            existing = merged.get(rel)
            if existing is None:
                merged[rel] = BundleFile(relative_path=rel, source=item.path, platform=item.platform)
                continue
            if existing.source == item.path:
                continue
            if not filecmp.cmp(existing.source, item.path, shallow=False):
                raise ConflictingArtifact(rel, existing.platform, item.platform)
    return tuple(merged[rel] for rel in sorted(merged))


def base_metadata(config, lib_version):
    metadata = dict(config.gemspec)
    metadata.update(name=config.library, version=config.version, lib_version=lib_version)
    return metadata


def build_bundle(metadata, platform, files, publish=True):
    extra = {
        key: value
        for key, value in metadata.items()
        if key not in ("name", "version", "lib_version")
    }
    return Bundle(
        name=metadata["name"],
        version=metadata["version"],
        lib_version=metadata["lib_version"],
        platform=platform,
        files=tuple(files),
        publish=publish,
        metadata=MappingProxyType(extra),
    )


def assemble(plan, file_sets, metadata, environ=None):
    if environ is None:
        environ = os.environ
    bundles = []
    for entry in plan:
        if entry.enable_env and environ.get(entry.enable_env) != "true":
            log(f"BUNDLE {entry.label}: skip ({entry.enable_env} is not set to true)")
            continue
        missing = [tag for tag in entry.sources if tag not in file_sets]
        if missing:
            raise BundlePlanError(
                f"Bundle {entry.label} needs platforms with no extracted files: "
                + ", ".join(missing)
            )
        files = union_file_sets([file_sets[tag] for tag in entry.sources])
        log(f"BUNDLE {entry.label}: {len(files)} files from {', '.join(entry.sources)}")
        bundles.append(build_bundle(metadata, entry.platform, files, publish=entry.publish))
    return bundles


def run_command(command, cwd=None, env=None):
    subprocess.run(command, check=True, cwd=cwd, env=env)


def gem_environment(bundle):
    env = dict(os.environ)
    env.update(
        {
            "LIBDDPROF_GEM_NAME": bundle.name,
            "LIBDDPROF_GEM_VERSION": bundle.version,
            "LIBDDPROF_GEM_PLATFORM": bundle.platform or "",
            "LIBDDPROF_GEM_FILES": "\n".join(bundle.destinations()),
            "LIBDDPROF_GEM_METADATA": json.dumps(dict(bundle.metadata), sort_keys=True),
        }
    )
    return env


def log_bundle_tree(bundle):
    tree = {}
    for name in bundle.destinations():
        node = tree
        for part in PurePosixPath(name).parts:
            node = node.setdefault(part, {})

    log(f"GEM tree: {bundle.gem_file_name}")

    def render(node, prefix=""):
        items = sorted(node.items(), key=lambda item: item[0])
        for idx, (name, child) in enumerate(items):
            is_last = idx == len(items) - 1
            connector = "`-- " if is_last else "|-- "
            log(prefix + connector + name)
            extension = "    " if is_last else "|   "
            if child:
                render(child, prefix + extension)

    render(tree)


def package_bundle(bundle, template_path, pkg_dir, run=run_command):
    template_path = Path(template_path)
    if not template_path.exists():
        raise PackagingError(f"Missing {template_path}")
    pkg_dir = Path(pkg_dir)
    pkg_dir.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory() as temp_root:
        work_dir = Path(temp_root)
        shutil.copy2(template_path, work_dir / template_path.name)
        for item in bundle.files:
            staged = work_dir / bundle.destination(item)
            staged.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item.source, staged)

        log(f"BUNDLE {bundle.label}: gem build {bundle.gem_file_name} (this can take a while)")
        run(["gem", "build", template_path.name], cwd=work_dir, env=gem_environment(bundle))

        built = work_dir / bundle.gem_file_name
        if not built.exists():
            raise PackagingError(f"Expected gem not found: {built}")
        output = pkg_dir / bundle.gem_file_name
        shutil.move(str(built), str(output))

    log(f"BUNDLE {bundle.label}: output {output}")
    log_bundle_tree(bundle)
    return output


def package_all(bundles, template_path, pkg_dir, run=run_command):
    return [package_bundle(bundle, template_path, pkg_dir, run=run) for bundle in bundles]


def working_tree_clean(root):
    try:
        output = subprocess.check_output(
            ["git", "status", "--porcelain", "--untracked-files=no"],
            cwd=root,
            text=True,
            stderr=subprocess.STDOUT,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        raise PublishPrecondition(f"Cannot determine git status of {root}: {exc}") from exc
    return not output.strip()


def rubygems_version_exists(name, version, platform, cache):
    key = (name, version, platform or "ruby")
    if key in cache:
        return cache[key]
    url = RUBYGEMS_VERSIONS_URL.format(name=name)
    versions = cache.get(url)
    if versions is None:
        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        try:
            with urllib.request.urlopen(req) as resp:
                versions = json.load(resp)
        except urllib.error.HTTPError:
            versions = []
        except OSError:
            log(f"Warning: failed to query rubygems.org for {name}")
            versions = []
        cache[url] = versions
    exists = any(
        str(item.get("number")) == key[1] and (item.get("platform") or "ruby") == key[2]
        for item in versions
        if isinstance(item, dict)
    )
    cache[key] = exists
    return exists


def push_gem(gem_path):
    run_command(["gem", "push", str(gem_path)])


def gem_signout():
    # leaves no credentials behind; a missing session is not an error
    subprocess.run(["gem", "signout"], check=False)


def publish_bundles(
    bundles,
    pkg_dir,
    root,
    is_clean=working_tree_clean,
    push=push_gem,
    signout=gem_signout,
    exists=rubygems_version_exists,
):
    if not is_clean(root):
        raise PublishPrecondition(
            f"Working tree at {root} has uncommitted changes; commit them before publishing"
        )
    receipts = []
    cache = {}
    signout()
    try:
        for bundle in bundles:
            gem_path = Path(pkg_dir) / bundle.gem_file_name
            if not bundle.publish:
                log(f"PUBLISH {bundle.label}: skip (not published to rubygems.org)")
                receipts.append(PublishReceipt(bundle, gem_path, "skipped"))
                continue
            if exists(bundle.name, bundle.version, bundle.platform, cache):
                log(f"PUBLISH {bundle.label}: skip (rubygems.org has {bundle.version})")
                receipts.append(PublishReceipt(bundle, gem_path, "skipped"))
                continue
            if not gem_path.exists():
                log(f"PUBLISH {bundle.label}: missing {gem_path}")
                receipts.append(PublishReceipt(bundle, gem_path, "failed", f"Missing {gem_path}"))
                continue
            log(f"PUBLISH {bundle.label}: gem push {gem_path}")
            try:
                push(gem_path)
            except (subprocess.CalledProcessError, OSError) as exc:
                log(f"PUBLISH {bundle.label}: failed ({exc})")
                receipts.append(PublishReceipt(bundle, gem_path, "failed", str(exc)))
                continue
            receipts.append(PublishReceipt(bundle, gem_path, "published"))
    finally:
        signout()
    return receipts


def run_pipeline(
    stage,
    config,
    root,
    lib_version=None,
    environ=None,
    download=download_asset,
    run=run_command,
    publisher=publish_bundles,
):
    if stage not in STAGES:
        raise ValueError(f"Unknown stage {stage}")
    root = Path(root)
    lib_version = lib_version or config.lib_version
    variants = config.manifest.lookup(lib_version)
    vendor_dir = root / "vendor"
    log(f"Release {config.library} {lib_version}: {len(variants)} variants, gem version {config.version}")

    result = {"stage": stage, "lib_version": lib_version}
    result["artifacts"] = fetch_all(config, lib_version, vendor_dir, download=download)
    if stage == "fetch":
        return result

    result["trees"] = extract_all(result["artifacts"])
    if stage == "extract":
        return result

    file_sets = {
        tree.variant.platform: select_files([tree], config.excluded_files)
        for tree in result["trees"]
    }
    bundles = assemble(
        config.bundles, file_sets, base_metadata(config, lib_version), environ=environ
    )
    result["bundles"] = bundles
    result["gems"] = package_all(bundles, root / GEMSPEC_TEMPLATE, root / "pkg", run=run)
    if stage == "package":
        return result

    result["receipts"] = publisher(bundles, root / "pkg", root)
    return result


def report(result):
    gems = result.get("gems") or []
    if gems:
        log("Built gems:")
        for gem in gems:
            log(f"  {gem}")
    receipts = result.get("receipts") or []
    if receipts:
        log("Publish results:")
        for receipt in receipts:
            suffix = f" ({receipt.error})" if receipt.error else ""
            log(f"  {receipt.bundle.gem_file_name}: {receipt.status}{suffix}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Fetch, verify and package libddprof release binaries as Ruby gems."
    )
    parser.add_argument(
        "--root",
        default=".",
        help="Repository root holding vendor/, pkg/ and the gemspec template.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Release configuration (default: <root>/{CONFIG_FILE}).",
    )
    parser.add_argument(
        "--lib-version",
        default=None,
        help="Upstream libddprof release to package (default: lib_version from the config).",
    )
    parser.add_argument(
        "stage",
        choices=STAGES,
        help="Pipeline stage to run; earlier stages run first.",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    root = Path(args.root).resolve()
    config_path = Path(args.config) if args.config else root / CONFIG_FILE

    try:
        config = load_config(config_path)
        result = run_pipeline(args.stage, config, root, lib_version=args.lib_version)
    except PackagingError as exc:
        fail(str(exc))
    except subprocess.CalledProcessError as exc:
        fail(f"Command failed with exit status {exc.returncode}: {' '.join(exc.cmd)}")

    report(result)
    failed = [receipt for receipt in result.get("receipts", []) if receipt.status == "failed"]
    if failed:
        fail(
            f"{len(failed)} gem(s) failed to publish: "
            + ", ".join(receipt.bundle.gem_file_name for receipt in failed)
        )


if __name__ == "__main__":
    main()
