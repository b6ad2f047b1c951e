"""Build, launch and app bundle models shared by the device layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class BuildMode(Enum):
    """Compilation mode of an app bundle."""

    DEBUG = "debug"
    PROFILE = "profile"
    RELEASE = "release"
    JIT_RELEASE = "jit_release"

    @property
    def is_release(self) -> bool:
        return self in (BuildMode.RELEASE, BuildMode.JIT_RELEASE)


class Category(Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


@dataclass(frozen=True)
class BuildInfo:
    mode: BuildMode = BuildMode.DEBUG
    tree_shake_icons: bool = False
    dart_defines: tuple[str, ...] = ()

    @property
    def is_debug(self) -> bool:
        return self.mode == BuildMode.DEBUG

    @property
    def is_release(self) -> bool:
        return self.mode.is_release


@dataclass(frozen=True)
class ELinuxBuildInfo:
    """Build info plus the target settings handed to the bundle builder."""

    build_info: BuildInfo
    target_arch: str
    target_backend_type: str
    target_sysroot: str = "/"
    target_compiler_triple: str | None = None
    target_compiler_flags: str | None = None
    target_toolchain: str | None = None
    system_include_directories: str | None = None


@dataclass(frozen=True)
class DebuggingOptions:
    """Launch options that map onto engine switches."""

    build_info: BuildInfo = field(default_factory=BuildInfo)
    debugging_enabled: bool = True
    enable_software_rendering: bool = False
    skia_deterministic_rendering: bool = False
    trace_skia: bool = False
    trace_allowlist: str | None = None
    trace_skia_allowlist: str | None = None
    trace_systrace: bool = False
    endless_trace_buffer: bool = False
    purge_persistent_cache: bool = False
    device_vm_service_port: int | None = None
    host_vm_service_port: int | None = None
    start_paused: bool = False
    disable_service_auth_codes: bool = False
    dart_flags: str = ""
    use_test_fonts: bool = False
    verbose_system_logs: bool = False
    dart_entrypoint_args: tuple[str, ...] = ()

    @classmethod
    def disabled(cls, build_info: BuildInfo, **kwargs: Any) -> DebuggingOptions:
        """Options for a launch without a VM service connection."""
        return cls(build_info=build_info, debugging_enabled=False, **kwargs)


@dataclass(frozen=True)
class LaunchResult:
    """Outcome of ``start_app``: started with an optional VM service URI, or failed."""

    started: bool
    service_uri: str | None = None

    @classmethod
    def succeeded(cls, service_uri: str | None = None) -> LaunchResult:
        return cls(started=True, service_uri=service_uri)

    @classmethod
    def failed(cls) -> LaunchResult:
        return cls(started=False)


@dataclass(frozen=True)
class AppBundle:
    """A built app and where its bundle lives on the host."""

    name: str
    build_dir: Path = Path("build/elinux")
    binary_name: str | None = None

    def output_directory(self, build_mode: BuildMode, target_arch: str) -> Path:
        return self.build_dir / target_arch / build_mode.value / "bundle"

    def executable(self, build_mode: BuildMode, target_arch: str) -> Path:
        return self.output_directory(build_mode, target_arch) / (self.binary_name or self.name)


class BundleBuilder(Protocol):
    """Compiles a project into a deployable bundle."""

    async def build_bundle(
        self, project: Any, target_file: str | None, build_info: ELinuxBuildInfo
    ) -> Path: ...


class LaunchObserver(Protocol):
    """Side effects run once a debug connection is available."""

    def notify_debug_attached(self, uri: str) -> None: ...

    def persist_service_uri(self, project: Any, uri: str) -> None: ...


class NullLaunchObserver:
    def notify_debug_attached(self, uri: str) -> None:
        return None

    def persist_service_uri(self, project: Any, uri: str) -> None:
        return None
