from __future__ import annotations

import logging
import os
import platform
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Sequence, Tuple

import requests
from requests.exceptions import RequestException

from .errors import InstallError
from .models import InstallResult

DEFAULT_REPO = "XTLS/Xray-core"
API_BASE_URL = "https://api.github.com"
USER_AGENT = "health-node"
DOWNLOAD_CHUNK_SIZE = 64 * 1024
ERROR_BODY_LIMIT = 2048
CORE_NAMES = {"xray", "v2ray"}
NON_BINARY_SUFFIXES = (".dat", ".json", ".txt", ".md", ".sig", ".dgst")

OS_TOKENS: Dict[str, List[str]] = {
    "linux": ["linux"],
    "darwin": ["darwin", "macos", "osx"],
    "windows": ["windows", "win"],
}

ARCH_TOKENS: Dict[str, List[str]] = {
    "amd64": ["amd64", "x86_64", "64"],
    "386": ["386", "i386", "32"],
    "arm64": ["arm64", "aarch64"],
    "arm": ["armv7", "arm32-v7a", "armv6", "arm"],
}

ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}

# Asset names that match the loose "64"/"32" tokens for x86 but belong to other CPUs.
FOREIGN_ARCH_MARKERS = ("arm", "mips", "ppc", "s390", "riscv", "loong")


def current_platform() -> Tuple[str, str]:
    system = platform.system().lower()
    machine = platform.machine().lower()
    return system, ARCH_ALIASES.get(machine, machine)


def expected_binary_name(repo: str) -> str:
    return "v2ray" if "v2ray" in repo.lower() else "xray"


def _is_archive(name: str) -> bool:
    return name.endswith((".zip", ".tar.gz", ".tgz"))


def choose_asset(assets: Sequence[Dict[str, Any]], system: str, arch: str) -> Dict[str, Any]:
    os_tokens = OS_TOKENS.get(system, [system])
    arch_tokens = ARCH_TOKENS.get(arch, [arch])

    candidates = []
    for asset in assets:
        name = str(asset.get("name") or "").lower()
        if not _is_archive(name):
            continue
        if not any(token in name for token in os_tokens):
            continue
        if not any(token in name for token in arch_tokens):
            continue
        if arch in {"amd64", "386"} and any(marker in name for marker in FOREIGN_ARCH_MARKERS):
            continue
        if arch == "arm" and "arm64" in name:
            continue
        candidates.append(asset)

    if not candidates:
        names = ", ".join(str(asset.get("name")) for asset in assets)
        raise InstallError(f"no matching release asset for {system}/{arch}, assets: {names}")

    for asset in candidates:
        if str(asset.get("name", "")).lower().endswith(".zip"):
            return asset
    return candidates[0]


def _is_core_binary(base: str, preferred: str) -> bool:
    stem = base.lower()
    if stem.endswith(".exe"):
        stem = stem[: -len(".exe")]
    return stem == preferred.lower() or stem in CORE_NAMES


def _is_executable_name(base: str) -> bool:
    lowered = base.lower()
    if lowered.endswith(NON_BINARY_SUFFIXES):
        return False
    return "geoip" not in lowered and "geosite" not in lowered


def _write_member(source: IO[bytes], destination: Path) -> Path:
    with destination.open("wb") as handle:
        shutil.copyfileobj(source, handle)
    return destination


def extract_binary(archive_path: Path, work_dir: Path, preferred: str) -> Path:
    """Pull the core executable out of a release archive into ``work_dir``.

    Prefers a member named like the core (``xray``/``v2ray``, with or
    without ``.exe``) and otherwise falls back to the first member that is
    not obviously data (geo databases, json, text).
    """
    lowered = archive_path.name.lower()
    fallback: Optional[Path] = None

    if lowered.endswith(".zip"):
        try:
            with zipfile.ZipFile(archive_path) as archive:
                for info in archive.infolist():
                    if info.is_dir():
                        continue
                    base = os.path.basename(info.filename)
                    if not base:
                        continue
                    if _is_core_binary(base, preferred):
                        with archive.open(info) as member:
                            return _write_member(member, work_dir / base)
                    if fallback is None and _is_executable_name(base):
                        with archive.open(info) as member:
                            fallback = _write_member(member, work_dir / base)
        except zipfile.BadZipFile as exc:
            raise InstallError(f"open zip: {exc}") from exc
    elif lowered.endswith((".tar.gz", ".tgz")):
        try:
            with tarfile.open(archive_path, "r:gz") as archive:
                for member_info in archive:
                    if not member_info.isfile():
                        continue
                    base = os.path.basename(member_info.name)
                    is_core = _is_core_binary(base, preferred)
                    if not is_core and (fallback is not None or not _is_executable_name(base)):
                        continue
                    member = archive.extractfile(member_info)
                    if member is None:
                        continue
                    with member:
                        extracted = _write_member(member, work_dir / base)
                    if is_core:
                        return extracted
                    fallback = extracted
        except tarfile.TarError as exc:
            raise InstallError(f"read tar member: {exc}") from exc
    else:
        raise InstallError(f"unsupported archive format: {archive_path}")

    if fallback is not None:
        return fallback
    raise InstallError(f"core binary not found inside {archive_path.name}")


class ReleaseInstaller:
    def __init__(
        self,
        *,
        base_url: str = API_BASE_URL,
        token: Optional[str] = None,
        timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.logger = logging.getLogger(__name__ + ".ReleaseInstaller")

    def fetch_release(self, repo: str, version: str) -> Dict[str, Any]:
        if version.lower() == "latest":
            url = f"{self.base_url}/repos/{repo}/releases/latest"
        else:
            url = f"{self.base_url}/repos/{repo}/releases/tags/{version}"
        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                headers={"Accept": "application/vnd.github+json"},
            )
        except RequestException as exc:
            raise InstallError(f"fetch release metadata: {exc}") from exc
        if response.status_code >= 300:
            body = response.text[:ERROR_BODY_LIMIT].strip()
            raise InstallError(f"github API returned {response.status_code}: {body}")
        try:
            release = response.json()
        except ValueError as exc:
            raise InstallError(f"decode release metadata: {exc}") from exc
        if not isinstance(release, dict) or not release.get("assets"):
            raise InstallError("release has no assets")
        return release

    def download(self, url: str, destination: Path) -> None:
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                if response.status_code >= 300:
                    body = response.text[:ERROR_BODY_LIMIT].strip()
                    raise InstallError(f"download failed with {response.status_code}: {body}")
                with destination.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except RequestException as exc:
            raise InstallError(f"download asset: {exc}") from exc
        except OSError as exc:
            raise InstallError(f"write download file: {exc}") from exc

    def install(
        self,
        repo: str = DEFAULT_REPO,
        version: str = "latest",
        dest_dir: str = ".",
        force: bool = False,
    ) -> InstallResult:
        repo = (repo or "").strip()
        if not repo:
            raise InstallError("repo is required")
        version = (version or "").strip() or "latest"
        destination_dir = Path((dest_dir or "").strip() or ".")

        release = self.fetch_release(repo, version)
        tag = str(release.get("tag_name") or version)
        system, arch = current_platform()
        asset = choose_asset(release["assets"], system, arch)
        self.logger.info("Selected release asset %s (%s)", asset.get("name"), tag)

        binary_name = expected_binary_name(repo)
        destination = destination_dir / binary_name
        if system == "windows":
            destination = destination.with_suffix(".exe")
        if destination.exists() and not force:
            raise InstallError(f"destination already exists: {destination} (use --force to overwrite)")

        with tempfile.TemporaryDirectory(prefix="health-node-core-") as tmp:
            work_dir = Path(tmp)
            archive_path = work_dir / str(asset["name"])
            self.download(str(asset["browser_download_url"]), archive_path)
            extracted = extract_binary(archive_path, work_dir, binary_name)
            try:
                destination_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(extracted, destination)
                destination.chmod(0o755)
            except OSError as exc:
                raise InstallError(f"install binary to {destination}: {exc}") from exc

        self.logger.info("Installed %s %s to %s", repo, tag, destination)
        return InstallResult(repo=repo, tag=tag, path=str(destination))


def install_core(
    repo: str = DEFAULT_REPO,
    version: str = "latest",
    dest_dir: str = ".",
    force: bool = False,
    *,
    timeout: float = 120.0,
    token: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> InstallResult:
    installer = ReleaseInstaller(token=token, timeout=timeout, session=session)
    return installer.install(repo=repo, version=version, dest_dir=dest_dir, force=force)


__all__ = [
    "ReleaseInstaller",
    "choose_asset",
    "extract_binary",
    "install_core",
]
