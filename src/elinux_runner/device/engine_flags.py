"""Engine switches passed to the launched app through environment variables.

The embedder reads ``FLUTTER_ENGINE_SWITCHES`` for the count and then
``FLUTTER_ENGINE_SWITCH_1`` .. ``FLUTTER_ENGINE_SWITCH_<count>``, each holding
one ``key=value`` switch. The order below is fixed: profiling always comes
first, VM service options only follow when debugging is enabled.
"""

from __future__ import annotations

from elinux_runner.device.models import DebuggingOptions

SWITCH_PREFIX = "FLUTTER_ENGINE_SWITCH_"
SWITCH_COUNT = "FLUTTER_ENGINE_SWITCHES"


class EngineSwitches:
    """Accumulates numbered switches."""

    def __init__(self) -> None:
        self._switches: list[str] = []

    def add(self, value: str) -> None:
        self._switches.append(value)

    def __len__(self) -> int:
        return len(self._switches)

    def to_environment(self) -> dict[str, str]:
        environment = {
            f"{SWITCH_PREFIX}{index}": value
            for index, value in enumerate(self._switches, start=1)
        }
        environment[SWITCH_COUNT] = str(len(self._switches))
        return environment


def compute_engine_environment(
    options: DebuggingOptions, trace_startup: bool = False, route: str | None = None
) -> dict[str, str]:
    """Encode ``options`` as the numbered switch environment."""
    switches = EngineSwitches()
    switches.add("enable-dart-profiling=true")

    if trace_startup:
        switches.add("trace-startup=true")
    if route is not None:
        switches.add(f"route={route}")
    if options.enable_software_rendering:
        switches.add("enable-software-rendering=true")
    if options.skia_deterministic_rendering:
        switches.add("skia-deterministic-rendering=true")
    if options.trace_skia:
        switches.add("trace-skia=true")
    if options.trace_allowlist is not None:
        switches.add(f"trace-allowlist={options.trace_allowlist}")
    if options.trace_skia_allowlist is not None:
        switches.add(f"trace-skia-allowlist={options.trace_skia_allowlist}")
    if options.trace_systrace:
        switches.add("trace-systrace=true")
    if options.endless_trace_buffer:
        switches.add("endless-trace-buffer=true")
    if options.purge_persistent_cache:
        switches.add("purge-persistent-cache=true")

    # Only meaningful with a VM service connection (debug or profile mode).
    if options.debugging_enabled:
        if options.device_vm_service_port is not None:
            switches.add(f"observatory-port={options.device_vm_service_port}")
        if options.build_info.is_debug:
            switches.add("enable-checked-mode=true")
            switches.add("verify-entry-points=true")
        if options.start_paused:
            switches.add("start-paused=true")
        if options.disable_service_auth_codes:
            switches.add("disable-service-auth-codes=true")
        if options.dart_flags:
            switches.add(f"dart-flags={options.dart_flags}")
        if options.use_test_fonts:
            switches.add("use-test-fonts=true")
        if options.verbose_system_logs:
            switches.add("verbose-logging=true")

    return switches.to_environment()
