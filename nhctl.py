#!/usr/bin/env python3
"""
nhctl - Nix configuration rebuild orchestrator

Builds and activates NixOS, Home-Manager and nix-darwin configurations:
- Resolves a flake or file reference into a buildable attribute
- Builds it with nix, optionally rendered through nix-output-monitor
- Diffs the result against the active generation with nvd
- Activates it under sudo with an explicit, allow-listed environment
- Records generations atomically and rolls back to earlier ones
"""

from contextlib import contextmanager, ExitStack
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Literal, Mapping, Sequence
import argparse
import fcntl
import hashlib
import json
import os
import pwd
import re
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time


SYSTEM_PROFILE = Path("/nix/var/nix/profiles/system")
OS_SPECIALISATION_MARKER = Path("/etc/specialisation")
DEFAULT_OUT_LINK = Path("result")

# Recommended minimum versions; older versions only warn
MIN_NIX_VERSION = (2, 28, 4)
MIN_LIX_VERSION = (2, 91, 3)

# Experimental features a flake build needs, per Nix variant
FLAKE_FEATURES = {
    "nix": ("nix-command", "flakes"),
    "lix": ("nix-command", "flakes"),
    "determinate": (),
}

# Forwarded into elevated commands when set in the invoking environment
DEFAULT_PRESERVE_ENV = (
    "LOCALE_ARCHIVE",
    "NIX_SSHOPTS",
    "NIX_CONFIG",
    "NIX_PATH",
    "NIX_REMOTE",
    "NIX_SSL_CERT_FILE",
    "NIX_USER_CONF_FILES",
    "NIXOS_INSTALL_BOOTLOADER",
    "HOME_MANAGER_BACKUP_EXT",
)

# PATH for elevated commands, rebuilt rather than inherited from the user
ELEVATED_PATH = ":".join([
    "/run/wrappers/bin",
    "/run/current-system/sw/bin",
    "/nix/var/nix/profiles/default/bin",
    "/usr/local/sbin",
    "/usr/local/bin",
    "/usr/sbin",
    "/usr/bin",
    "/sbin",
    "/bin",
])
LOCALE_VARS = ("LANG", "LANGUAGE", "LC_ALL")

DIAGNOSTIC_LINES = 25

VERBOSE = False


def debug(message: str):
    """Print a diagnostic message when running verbosely."""
    if VERBOSE:
        print(f"debug: {message}", file=sys.stderr)


def warn(message: str):
    print(f"Warning: {message}")


# =============================================================================
# Errors
# =============================================================================

class OrchestrationError(Exception):
    """Base for failures reported to the user as (stage, kind, message)."""
    kind = "Error"
    diagnostics: tuple[str, ...] = ()


class GateError(OrchestrationError):
    kind = "GateError"


class MissingFeature(GateError):
    kind = "MissingFeature"

    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing required experimental features for this command: {', '.join(self.missing)}"
        )


class ResolveError(OrchestrationError):
    kind = "ResolveError"


class NoTargetSpecified(ResolveError):
    kind = "NoTargetSpecified"


class BuildError(OrchestrationError):
    kind = "BuildError"

    def __init__(self, exit_code: int, diagnostics: Sequence[str], message: str | None = None):
        self.exit_code = exit_code
        self.diagnostics = tuple(diagnostics)
        super().__init__(message or f"Failed to build configuration (exit status {exit_code})")


class DiffError(OrchestrationError):
    kind = "DiffError"


class SpecialisationError(OrchestrationError):
    kind = "SpecialisationError"


class UnknownSpecialisation(SpecialisationError):
    kind = "UnknownSpecialisation"

    def __init__(self, name: str, available: Sequence[str]):
        self.name = name
        self.available = list(available)
        known = ", ".join(self.available) if self.available else "none"
        super().__init__(f"Specialisation '{name}' does not exist in the built configuration (available: {known})")


class ElevationError(OrchestrationError):
    kind = "ElevationError"


class ForbiddenAsRoot(ElevationError):
    kind = "ForbiddenAsRoot"


class ActivationError(OrchestrationError):
    kind = "ActivationError"

    def __init__(self, message: str, diagnostics: Sequence[str] = ()):
        self.diagnostics = tuple(diagnostics)
        super().__init__(message)


class RegistryError(OrchestrationError):
    kind = "RegistryError"


class NoSuchGeneration(RegistryError):
    kind = "NoSuchGeneration"

    def __init__(self, number: int):
        self.number = number
        super().__init__(f"Generation {number} not found")


class UserAborted(OrchestrationError):
    kind = "UserAborted"


# =============================================================================
# Configuration
# =============================================================================

PlatformKind = Literal['os', 'home', 'darwin']
Mode = Literal['switch', 'boot', 'test', 'build', 'build-vm', 'rollback']
ConfirmPolicy = Literal['always', 'never', 'auto']
DiffPolicy = Literal['always', 'never', 'auto']
Stage = Literal['resolving', 'building', 'diffing', 'awaiting-confirmation',
                'activating', 'committing', 'done', 'failed', 'rolled-back']

BUILD_ONLY_MODES = frozenset({'build', 'build-vm'})
PERSISTENT_MODES = frozenset({'switch', 'boot'})


@dataclass(frozen=True)
class Programs:
    """External executables, overridable for testing or unusual installs."""
    nix: str = "nix"
    nix_build: str = "nix-build"
    nix_env: str = "nix-env"
    nom: str = "nom"
    differ: tuple[str, ...] = ("nvd", "diff")
    sudo: str = "sudo"


@dataclass(frozen=True)
class Settings:
    """Defaults taken from NH_* environment variables."""
    no_checks: bool = False
    askpass: str | None = None
    preserve_env: tuple[str, ...] = DEFAULT_PRESERVE_ENV

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "Settings":
        extra = tuple(name.strip() for name in environ.get("NH_PRESERVE_ENV", "").split(",")
                      if name.strip())
        return cls(
            no_checks="NH_NO_CHECKS" in environ,
            askpass=environ.get("NH_SUDO_ASKPASS") or None,
            preserve_env=DEFAULT_PRESERVE_ENV + extra,
        )


@dataclass(frozen=True)
class Platform:
    """What differs between NixOS, Home-Manager and nix-darwin."""
    kind: PlatformKind
    label: str
    config_attr: str             # flake output holding the configurations
    env_var: str                 # platform-specific flake variable
    modes: frozenset[str]
    forbid_root: bool            # refuse to run the build as root
    records_on_activate: bool    # activation script writes its own generation
    rollback: bool               # earlier generations can be re-activated


PLATFORMS: dict[str, Platform] = {
    'os': Platform(
        kind='os',
        label="NixOS",
        config_attr="nixosConfigurations",
        env_var="NH_OS_FLAKE",
        modes=frozenset({'switch', 'boot', 'test', 'build', 'build-vm'}),
        forbid_root=True,
        records_on_activate=False,
        rollback=True,
    ),
    'home': Platform(
        kind='home',
        label="Home-Manager",
        config_attr="homeConfigurations",
        env_var="NH_HOME_FLAKE",
        modes=frozenset({'switch', 'build'}),
        forbid_root=False,
        records_on_activate=True,
        rollback=False,
    ),
    'darwin': Platform(
        kind='darwin',
        label="Darwin",
        config_attr="darwinConfigurations",
        env_var="NH_DARWIN_FLAKE",
        modes=frozenset({'switch', 'build'}),
        forbid_root=True,
        records_on_activate=False,
        rollback=True,
    ),
}


@dataclass(frozen=True)
class ProfilePaths:
    """Where a platform keeps its generations and its specialisation marker."""
    profile: Path
    marker: Path | None


def default_paths(kind: PlatformKind, environ: Mapping[str, str]) -> ProfilePaths:
    """Profile link and marker file for a platform on this machine."""
    if kind == 'home':
        home = Path(environ.get("HOME") or Path.home())
        data_home = Path(environ.get("XDG_DATA_HOME") or home / ".local/share")
        state_home = Path(environ.get("XDG_STATE_HOME") or home / ".local/state")
        user = environ.get("USER", "")
        per_user = Path("/nix/var/nix/profiles/per-user") / user / "home-manager"
        if user and per_user.is_symlink():
            profile = per_user
        else:
            profile = state_home / "nix/profiles/home-manager"
        return ProfilePaths(profile=profile, marker=data_home / "home-manager/specialisation")
    if kind == 'darwin':
        return ProfilePaths(profile=SYSTEM_PROFILE, marker=None)
    return ProfilePaths(profile=SYSTEM_PROFILE, marker=OS_SPECIALISATION_MARKER)


def system_hostname() -> str | None:
    """The local hostname, or None if it cannot be determined."""
    try:
        hostname = socket.gethostname()
    except OSError as e:
        warn(f"Failed to detect hostname: {e}")
        return None
    return hostname or None


# =============================================================================
# References and build targets
# =============================================================================

def parse_attribute(s: str) -> list[str]:
    """Split an attribute path on dots, honouring quotes: foo."bar.baz" -> [foo, bar.baz]."""
    if not s:
        return []
    result = []
    elem = ""
    in_quote = False
    for char in s:
        if char == '"':
            in_quote = not in_quote
        elif char == '.' and not in_quote:
            result.append(elem)
            elem = ""
        else:
            elem += char
    if in_quote:
        raise ResolveError(f"Failed to parse attribute: {s}")
    result.append(elem)
    return result


def join_attribute(parts: Iterable[str]) -> str:
    """Inverse of parse_attribute."""
    return ".".join(f'"{p}"' if "." in p else p for p in parts)


@dataclass(frozen=True)
class ConfigReference:
    """A flake reference with attribute path, or a legacy file reference."""
    location: str
    attribute: tuple[str, ...] = ()
    flake: bool = True
    overrides: tuple[str, ...] = ()   # legacy only, e.g. ('--arg', 'x', '1')

    @classmethod
    def parse(cls, value: str) -> "ConfigReference":
        """Parse 'ref#attr.path' into a flake reference."""
        reference, _, attribute = value.partition("#")
        return cls(location=reference, attribute=tuple(parse_attribute(attribute)))

    def extend(self, *parts: str) -> "ConfigReference":
        return replace(self, attribute=self.attribute + tuple(parts))

    def to_args(self) -> list[str]:
        if self.flake:
            return [f"{self.location}#{join_attribute(self.attribute)}"]
        args = [self.location]
        if self.attribute:
            args += ["-A", join_attribute(self.attribute)]
        return args + list(self.overrides)

    def __str__(self) -> str:
        if self.flake:
            return f"{self.location}#{join_attribute(self.attribute)}"
        return f"{self.location} ({join_attribute(self.attribute) or '<root>'})"


@dataclass(frozen=True)
class BuildTarget:
    """A resolved, fully qualified thing to build."""
    reference: ConfigReference
    platform: PlatformKind
    output: str
    hostname: str | None = None
    extra_args: tuple[str, ...] = ()

    def build_command(self, programs: Programs, out_link: Path, log_args: Sequence[str] = ()) -> list[str]:
        """Builder invocation; extra_args are appended untouched."""
        if self.reference.flake:
            cmd = [programs.nix, "build", *self.reference.to_args()]
        else:
            cmd = [programs.nix_build, *self.reference.to_args()]
        return cmd + [*log_args, "--out-link", str(out_link), *self.extra_args]


@dataclass(frozen=True)
class Closure:
    """A built store path and where it came from."""
    path: Path
    platform: PlatformKind
    built_at: float
    hostname: str | None = None

    def specialisations(self) -> list[str]:
        spec_dir = self.path / "specialisation"
        if not spec_dir.is_dir():
            return []
        return sorted(p.name for p in spec_dir.iterdir())

    def variant(self, specialisation: str | None) -> Path:
        """Path to activate for the given specialisation (None is the base)."""
        if specialisation is None:
            return self.path
        return self.path / "specialisation" / specialisation


@dataclass(frozen=True)
class Generation:
    """A numbered profile link recording a previously activated closure."""
    number: int
    link: Path
    closure: Path
    created_at: float
    current: bool = False
    specialisation: str | None = None

    def specialisations(self) -> list[str]:
        spec_dir = self.link / "specialisation"
        if not spec_dir.is_dir():
            return []
        return sorted(p.name for p in spec_dir.iterdir())

    def as_closure(self, platform: PlatformKind, hostname: str | None = None) -> Closure:
        return Closure(path=self.closure, platform=platform, built_at=self.created_at, hostname=hostname)


# =============================================================================
# Target resolution
# =============================================================================

@dataclass(frozen=True)
class TargetInput:
    """What the command line said about the target."""
    installable: str | None = None
    file: str | None = None
    overrides: tuple[str, ...] = ()
    hostname: str | None = None
    configuration: str | None = None
    with_bootloader: bool = False
    extra_args: tuple[str, ...] = ()


# lookup(reference, name) -> whether the attribute set at reference has name
AttributeLookup = Callable[[ConfigReference, str], bool]


def adopt_legacy_flake(environ: Mapping[str, str]) -> tuple[dict[str, str], str | None]:
    """
    Alias the deprecated FLAKE variable to NH_FLAKE.

    Only applies when no NH_*FLAKE variable is set. Returns a new mapping and
    the warning to show, leaving the input untouched so repeated calls agree.
    """
    env = dict(environ)
    if "FLAKE" not in env or "NH_FLAKE" in env:
        return env, None
    if any(p.env_var in env for p in PLATFORMS.values()):
        return env, None
    env["NH_FLAKE"] = env["FLAKE"]
    return env, "FLAKE is deprecated, set NH_FLAKE instead (using FLAKE for this run)"


def resolve_reference(cli: TargetInput, platform: Platform, environ: Mapping[str, str]) -> ConfigReference:
    """Pick the configuration location: CLI, then platform variable, then NH_FLAKE, then NH_FILE."""
    if cli.file:
        return ConfigReference(
            location=cli.file,
            attribute=tuple(parse_attribute(cli.installable or "")),
            flake=False,
            overrides=cli.overrides,
        )
    if cli.installable:
        return ConfigReference.parse(cli.installable)

    for var in (platform.env_var, "NH_FLAKE"):
        value = environ.get(var)
        if value:
            debug(f"Using {var}={value}")
            return ConfigReference.parse(value)

    file = environ.get("NH_FILE")
    if file:
        return ConfigReference(
            location=file,
            attribute=tuple(parse_attribute(environ.get("NH_ATTRP", ""))),
            flake=False,
            overrides=cli.overrides,
        )

    raise NoTargetSpecified(
        f"No {platform.label} configuration specified: pass an installable or --file, "
        f"or set {platform.env_var}, NH_FLAKE or NH_FILE"
    )


def uses_flakes(cli: TargetInput, platform: Platform, environ: Mapping[str, str]) -> bool:
    """Whether resolution will end at a flake reference, without resolving."""
    if cli.file:
        return False
    if cli.installable:
        return True
    env, _ = adopt_legacy_flake(environ)
    if env.get(platform.env_var) or env.get("NH_FLAKE"):
        return True
    return not env.get("NH_FILE")


def nix_eval_lookup(programs: Programs, extra_args: Sequence[str] = ()) -> AttributeLookup:
    """Look up names in flake attribute sets with `nix eval --apply 'x: x ? "name"'`."""
    def lookup(reference: ConfigReference, name: str) -> bool:
        cmd = [programs.nix, "eval", *extra_args, "--apply", f'x: x ? "{name}"', *reference.to_args()]
        debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ResolveError(f"Failed to run {programs.nix} eval: {e}") from e
        if result.returncode != 0:
            raise ResolveError(f"nix eval failed while looking for '{name}':\n{result.stderr.strip()}")
        return result.stdout.strip() == "true"
    return lookup


def _home_configuration(reference: ConfigReference, cli: TargetInput, environ: Mapping[str, str],
                        hostname: str, lookup: AttributeLookup) -> str:
    configs = reference.extend("homeConfigurations")
    if cli.configuration:
        if not lookup(configs, cli.configuration):
            raise ResolveError(
                f"Home-Manager configuration not found: {configs.extend(cli.configuration)}"
            )
        return cli.configuration

    user = environ.get("USER")
    if not user:
        raise ResolveError("Cannot detect the Home-Manager configuration: USER is not set")
    candidates = [f"{user}@{hostname}", user]
    for name in candidates:
        if lookup(configs, name):
            debug(f"Using Home-Manager configuration {name}")
            return name
    tried = ", ".join(str(configs.extend(name)) for name in candidates)
    raise ResolveError(f"Couldn't find a Home-Manager configuration automatically, tried: {tried}")


def resolve_target(cli: TargetInput, kind: PlatformKind, mode: Mode,
                   environ: Mapping[str, str], lookup: AttributeLookup | None = None) -> BuildTarget:
    """Turn CLI input and environment defaults into a BuildTarget."""
    platform = PLATFORMS[kind]
    if mode not in platform.modes:
        raise ResolveError(f"{platform.label} does not support '{mode}'")

    environ, warning = adopt_legacy_flake(environ)
    if warning:
        warn(warning)
    reference = resolve_reference(cli, platform, environ)

    hostname = cli.hostname or system_hostname()
    if not hostname:
        raise ResolveError("Unable to determine the hostname, pass --hostname")

    if kind == 'home':
        output = "activationPackage"
        if reference.attribute:
            debug(f"Using explicit attribute path {join_attribute(reference.attribute)}")
        elif reference.flake:
            if lookup is None:
                lookup = nix_eval_lookup(Programs(), cli.extra_args)
            name = _home_configuration(reference, cli, environ, hostname, lookup)
            reference = reference.extend("homeConfigurations", name, "config", "home", output)
        else:
            reference = reference.extend("config", "home", output)
    else:
        if mode == 'build-vm':
            output = "vmWithBootLoader" if cli.with_bootloader else "vm"
        else:
            output = "toplevel"
        if reference.flake and not reference.attribute:
            reference = reference.extend(platform.config_attr, hostname)
        reference = reference.extend("config", "system", "build", output)

    return BuildTarget(
        reference=reference,
        platform=kind,
        output=output,
        hostname=hostname,
        extra_args=tuple(cli.extra_args),
    )


# =============================================================================
# Environment gate
# =============================================================================

ToolVariant = Literal['nix', 'lix', 'determinate', 'unknown']


@dataclass(frozen=True)
class ToolInfo:
    """What `nix --version` and the experimental feature list reported."""
    variant: ToolVariant
    version: str
    features: frozenset[str] = frozenset()


def detect_variant(version_output: str) -> ToolVariant:
    text = version_output.lower()
    if "lix" in text:
        return 'lix'
    if "determinate" in text:
        return 'determinate'
    if "nix" in text:
        return 'nix'
    return 'unknown'


def normalize_version_string(version: str) -> str | None:
    """Best-effort X.Y.Z from strings like '2.29pre20250101_abc' or 'nix (Nix) 2.28.4'."""
    m = re.search(r"(\d+)\.(\d+)\.(\d+)", version)
    if m:
        return ".".join(m.groups())
    m = re.search(r"(\d+)\.(\d+)", version)
    if m:
        return f"{m.group(1)}.{m.group(2)}.0"
    return None


def inspect_tool(programs: Programs) -> ToolInfo:
    """Ask the installed nix for its variant, version and enabled features."""
    try:
        result = subprocess.run([programs.nix, "--version"], capture_output=True, text=True)
    except OSError as e:
        raise GateError(f"Failed to run {programs.nix}: {e}") from e
    if result.returncode != 0:
        raise GateError(f"{programs.nix} --version failed:\n{result.stderr.strip()}")
    first_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""

    features: frozenset[str] = frozenset()
    try:
        shown = subprocess.run(
            [programs.nix, "config", "show", "experimental-features"],
            capture_output=True, text=True,
        )
        if shown.returncode == 0:
            features = frozenset(shown.stdout.split())
        else:
            debug(f"Could not list experimental features: {shown.stderr.strip()}")
    except OSError as e:
        debug(f"Could not list experimental features: {e}")

    return ToolInfo(variant=detect_variant(first_line), version=first_line, features=features)


def check_version(tool: ToolInfo):
    """Warn about unparseable or outdated versions. Never fails."""
    normalized = normalize_version_string(tool.version)
    if normalized is None:
        warn(f"Could not parse the Nix version from '{tool.version}', skipping the version check")
        return
    version = tuple(int(part) for part in normalized.split("."))
    if tool.variant == 'lix':
        minimum, name = MIN_LIX_VERSION, "Lix"
    elif tool.variant == 'determinate':
        return
    else:
        minimum, name = MIN_NIX_VERSION, "Nix"
    if version < minimum:
        warn(f"{name} {normalized} is older than the recommended "
             f"{'.'.join(str(n) for n in minimum)}, some features may not work")


def check_environment(tool: ToolInfo, flake: bool):
    """Pre-flight check, shaped by whether the request builds a flake."""
    variant = tool.variant
    if variant == 'unknown':
        warn(f"Unrecognised Nix implementation '{tool.version}', assuming mainline Nix")
        variant = 'nix'
    check_version(tool)

    if not flake:
        debug("Legacy reference, skipping the experimental feature check")
        return
    missing = [f for f in FLAKE_FEATURES[variant] if f not in tool.features]
    if missing:
        raise MissingFeature(missing)


# =============================================================================
# Child processes
# =============================================================================

@contextmanager
def child_process(proc: subprocess.Popen) -> Iterator[subprocess.Popen]:
    """Make sure an interrupted parent takes its child down with it."""
    try:
        yield proc
    except BaseException:
        if proc.poll() is None:
            debug(f"Interrupting child process {proc.pid}")
            proc.send_signal(signal.SIGINT)
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        raise


def _diagnostic_line(raw: str, structured: bool) -> str | None:
    """The human-readable part of one stderr line, if any."""
    line = raw.rstrip("\n")
    if structured and line.startswith("@nix "):
        try:
            event = json.loads(line[5:])
        except json.JSONDecodeError:
            return None
        if event.get("action") != "msg":
            return None
        line = event.get("msg", "")
    return line if line.strip() else None


def run_streaming(cmd: Sequence[str], env: Mapping[str, str] | None = None,
                  viewer: subprocess.Popen | None = None) -> tuple[int, list[str]]:
    """
    Run cmd, relaying its stderr live and keeping the last diagnostic lines.

    With a viewer, stderr is internal-json and goes to the viewer's stdin
    instead of our own stderr. Returns (exit code, diagnostic tail).
    """
    structured = viewer is not None
    tail: deque[str] = deque(maxlen=DIAGNOSTIC_LINES)
    proc = subprocess.Popen(
        list(cmd),
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        env=dict(env) if env is not None else None,
    )

    def pump():
        sink = viewer.stdin if viewer is not None else sys.stderr
        for raw in proc.stderr:
            diagnostic = _diagnostic_line(raw, structured)
            if diagnostic is not None:
                tail.append(diagnostic)
            if sink is None:
                continue
            try:
                sink.write(raw)
                sink.flush()
            except (BrokenPipeError, ValueError):
                # Viewer went away; keep draining so the child never blocks
                sink = None

    relay = threading.Thread(target=pump, daemon=True)
    with child_process(proc):
        relay.start()
        code = proc.wait()
        relay.join()
    proc.stderr.close()

    if viewer is not None:
        try:
            viewer.stdin.close()
        except BrokenPipeError:
            pass
        viewer.wait()
    return code, list(tail)


def publish_link(target: Path, link: Path):
    """Atomically point link at target via a private temporary symlink."""
    tmp_link = link.parent / f".{link.name}.{os.getpid()}.tmp"
    if tmp_link.exists() or tmp_link.is_symlink():
        tmp_link.unlink()
    tmp_link.symlink_to(target)
    tmp_link.rename(link)


# =============================================================================
# Build
# =============================================================================

def build_closure(target: BuildTarget, programs: Programs,
                  out_link: Path | None = None, nom: bool = True) -> Closure:
    """
    Build the target and publish the result at out_link.

    The builder writes into a private staging directory; only a finished
    result replaces the visible link, so concurrent runs never observe a
    half-written path.
    """
    out_link = Path(out_link or DEFAULT_OUT_LINK)
    staging = Path(tempfile.mkdtemp(prefix="nhctl-build-"))
    staged = staging / "result"
    try:
        with ExitStack() as stack:
            viewer = None
            log_args: list[str] = []
            if nom:
                try:
                    viewer = subprocess.Popen([programs.nom, "--json"], stdin=subprocess.PIPE, text=True)
                except OSError as e:
                    warn(f"Failed to start {programs.nom} ({e}), showing raw build output")
                else:
                    stack.enter_context(child_process(viewer))
                    log_args = ["--log-format", "internal-json", "-v"]

            cmd = target.build_command(programs, staged, log_args)
            print(f"Running: {' '.join(cmd)}")
            try:
                code, tail = run_streaming(cmd, viewer=viewer)
            except OSError as e:
                raise BuildError(127, [], f"Failed to run the builder: {e}") from e

        if code != 0:
            raise BuildError(code, tail)
        if not staged.is_symlink():
            raise BuildError(code, tail, f"Builder exited successfully but left no output link at {staged}")

        store_path = Path(os.path.realpath(staged))
        try:
            if out_link.parent != Path(""):
                out_link.parent.mkdir(parents=True, exist_ok=True)
            publish_link(store_path, out_link)
        except OSError as e:
            raise BuildError(code, tail, f"Failed to publish {out_link}: {e}") from e
        print(f"Built {store_path}")
        return Closure(path=store_path, platform=target.platform, built_at=time.time(), hostname=target.hostname)
    finally:
        shutil.rmtree(staging, ignore_errors=True)


# =============================================================================
# Diff
# =============================================================================

# nvd change lines look like "[U.]  #1  firefox  120.0 -> 121.0"
CHANGE_LINE = re.compile(r"^\[[A-Z][^\]]*\]\s+#\d+")


@dataclass
class DiffReport:
    """Result of comparing the active closure with a candidate."""
    available: bool = False
    changes: list[str] = field(default_factory=list)
    output: str = ""
    note: str | None = None

    def has_changes(self) -> bool:
        return bool(self.changes)

    def print_summary(self):
        """Print the differ's report, or why there is none."""
        if self.note:
            print(f"Note: {self.note}")
        if not self.available:
            print("No comparison available.")
            return
        if self.output.strip():
            print(self.output.rstrip())
        if not self.has_changes():
            print("No package changes.")


def run_differ(previous: Path, candidate: Path, programs: Programs) -> str:
    cmd = [*programs.differ, str(previous), str(candidate)]
    debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise DiffError(f"Failed to run {programs.differ[0]}: {e}") from e
    if result.returncode != 0:
        raise DiffError(f"{programs.differ[0]} exited with status {result.returncode}: {result.stderr.strip()}")
    return result.stdout


def diff_closures(previous: Closure | None, candidate: Closure, programs: Programs,
                  policy: DiffPolicy = 'auto') -> DiffReport:
    """Compare two closures. Never raises; problems become an empty report."""
    if policy == 'never':
        return DiffReport(note="diff disabled")
    if previous is None:
        return DiffReport(note="no previous generation to compare against")
    if previous.platform != candidate.platform:
        return DiffReport(note=f"cannot compare a {previous.platform} closure with a {candidate.platform} closure")

    note = None
    if (candidate.platform != 'home' and previous.hostname and candidate.hostname
            and previous.hostname != candidate.hostname):
        note = f"comparing across different hosts ({previous.hostname} -> {candidate.hostname})"
        if policy == 'auto':
            return DiffReport(note=note)

    try:
        output = run_differ(previous.path, candidate.path, programs)
    except DiffError as e:
        warn(f"Diff unavailable: {e}")
        return DiffReport(note=str(e))

    changes = [line for line in output.splitlines() if CHANGE_LINE.match(line)]
    return DiffReport(available=True, changes=changes, output=output, note=note)


# =============================================================================
# Specialisations
# =============================================================================

def read_specialisation_marker(path: Path | None) -> str | None:
    """Name in the marker file, or None for missing/empty files."""
    if path is None:
        return None
    try:
        name = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        warn(f"Failed to read specialisation marker {path}: {e}")
        return None
    return name or None


def select_specialisation(closure: Closure, explicit: str | None = None, ignore: bool = False,
                          marker: Path | None = None) -> str | None:
    """
    Choose the variant of a freshly built closure to activate.

    Explicit name, then ignore (base), then the marker file, then base. The
    result is always checked against the candidate closure.
    """
    if explicit:
        name = explicit
    elif ignore:
        return None
    else:
        name = read_specialisation_marker(marker)
        if name:
            debug(f"Detected specialisation {name} from {marker}")
    if name is None:
        return None

    available = closure.specialisations()
    if name not in available:
        raise UnknownSpecialisation(name, available)
    return name


# =============================================================================
# Elevation
# =============================================================================

def target_home(uid: int = 0) -> str:
    """HOME for the account commands are elevated to."""
    try:
        return pwd.getpwuid(uid).pw_dir
    except KeyError:
        return "/root"


def elevated_environment(environ: Mapping[str, str], allow_list: Iterable[str], home: str) -> dict[str, str]:
    """
    Environment for an elevated command, built from nothing.

    PATH, HOME and locale variables are always set; allow-listed variables are
    copied only when present, and can't replace the fixed ones.
    """
    env = {"PATH": ELEVATED_PATH, "HOME": home}
    for name, value in environ.items():
        if name in LOCALE_VARS or name.startswith("LC_"):
            env[name] = value
    for name in allow_list:
        if name in environ and name not in env:
            env[name] = environ[name]
    return env


class Elevator:
    """Runs commands as root through sudo, never with the ambient environment."""

    def __init__(self, environ: Mapping[str, str], allow_list: Iterable[str] = DEFAULT_PRESERVE_ENV,
                 askpass: str | None = None, allow: bool = True, program: str = "sudo",
                 euid: int | None = None):
        self.environ = dict(environ)
        self.allow_list = tuple(allow_list)
        self.askpass = askpass
        self.allow = allow
        self.program = program
        self.euid = os.geteuid() if euid is None else euid

    def environment(self, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        env = elevated_environment(self.environ, self.allow_list, target_home())
        for name, value in (overrides or {}).items():
            if name not in self.allow_list:
                raise ElevationError(f"Refusing to pass {name} to an elevated command: it is not allow-listed")
            env[name] = value
        return env

    def command(self, argv: Sequence[str], overrides: Mapping[str, str] | None = None) -> tuple[list[str], dict[str, str]]:
        """The sudo command line, and the environment for sudo itself."""
        env = self.environment(overrides)
        cmd = [self.program]
        sudo_env = {"PATH": self.environ.get("PATH", ELEVATED_PATH)}
        if self.askpass:
            cmd.append("-A")
            sudo_env["SUDO_ASKPASS"] = self.askpass
        cmd += ["--", "env", "-i", *(f"{k}={v}" for k, v in env.items()), *argv]
        return cmd, sudo_env

    def run(self, argv: Sequence[str], overrides: Mapping[str, str] | None = None) -> tuple[int, list[str]]:
        """Run argv as root. Already being root runs it directly."""
        if self.euid == 0:
            debug(f"Already root, running {argv[0]} without {self.program}")
            try:
                return run_streaming(argv, env=self.environment(overrides))
            except OSError as e:
                raise ElevationError(f"Failed to run {argv[0]}: {e}") from e

        if not self.allow:
            raise ElevationError(f"Running {argv[0]} requires root, but elevation is disabled")
        if self.askpass and not os.access(self.askpass, os.X_OK):
            raise ElevationError(f"Askpass helper {self.askpass} is not executable")

        cmd, sudo_env = self.command(argv, overrides)
        debug(f"Elevating: {' '.join(argv)}")
        try:
            return run_streaming(cmd, env=sudo_env)
        except OSError as e:
            raise ElevationError(f"Failed to run {self.program}: {e}") from e


def check_not_root(platform: Platform, euid: int, bypass: bool):
    """Refuse to orchestrate system builds as root unless bypassed."""
    if euid != 0 or not platform.forbid_root:
        return
    if not bypass:
        raise ForbiddenAsRoot(
            f"Don't run nhctl {platform.kind} as root, it elevates individual steps as needed "
            f"(pass --bypass-root-check to override)"
        )
    warn("Running as root, commands will run without sudo")


# =============================================================================
# Generation registry
# =============================================================================

class GenerationRegistry:
    """
    Numbered generations of one Nix profile.

    A profile is a symlink `<name>` pointing at `<name>-<N>-link`, which in
    turn points at a store path. Numbers only ever grow.
    """

    def __init__(self, profile: Path, nix_env: str = "nix-env", lock_dir: Path | None = None):
        self.profile = Path(profile)
        self.nix_env = nix_env
        self.lock_dir = Path(lock_dir) if lock_dir else None

    def _link(self, number: int) -> Path:
        return self.profile.parent / f"{self.profile.name}-{number}-link"

    def _number(self, link_name: str) -> int | None:
        prefix = f"{self.profile.name}-"
        if not (link_name.startswith(prefix) and link_name.endswith("-link")):
            return None
        middle = link_name[len(prefix):-len("-link")]
        return int(middle) if middle.isdigit() else None

    def _current_number(self) -> int | None:
        if not self.profile.is_symlink():
            return None
        return self._number(Path(os.readlink(self.profile)).name)

    def generations(self) -> list[Generation]:
        """All generations, oldest first."""
        if not self.profile.parent.is_dir():
            return []
        current = self._current_number()
        result = []
        for p in self.profile.parent.glob(f"{self.profile.name}-*-link"):
            number = self._number(p.name)
            if number is None:
                continue
            result.append(Generation(
                number=number,
                link=p,
                closure=Path(os.path.realpath(p)),
                created_at=p.lstat().st_mtime,
                current=number == current,
            ))
        return sorted(result, key=lambda g: g.number)

    def current(self) -> Generation | None:
        return next((g for g in self.generations() if g.current), None)

    def find(self, number: int) -> Generation:
        for g in self.generations():
            if g.number == number:
                return g
        raise NoSuchGeneration(number)

    def select_rollback(self, target: int | None = None) -> Generation:
        """The generation to roll back to: target, or the one before current."""
        current = self.current()
        if target is not None:
            generation = self.find(target)
            if current is not None and generation.number == current.number:
                raise RegistryError(f"Generation {target} is already the current generation")
            return generation
        if current is None:
            raise RegistryError(f"No current generation in {self.profile}")
        earlier = [g for g in self.generations() if g.number < current.number]
        if not earlier:
            raise RegistryError(f"No generation older than {current.number} in {self.profile}")
        return earlier[-1]

    def lock_path(self) -> Path:
        """
        Lock file shared by everyone who can write this profile.

        Beside the profile when its directory is writable, otherwise in the
        system temp directory, named after the profile either way.
        """
        digest = hashlib.sha256(str(self.profile).encode()).hexdigest()[:16]
        if self.lock_dir is not None:
            directory = self.lock_dir
        elif self.writable():
            directory = self.profile.parent
        else:
            directory = Path(tempfile.gettempdir())
        return directory / f".nhctl-{digest}.lock"

    @contextmanager
    def locked(self):
        """Exclusive per-profile lock; contention is an error, not a wait."""
        lock_path = self.lock_path()
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            # Read-only so a lock file created by another account still opens
            try:
                fd = os.open(lock_path, os.O_RDONLY)
            except FileNotFoundError:
                fd = os.open(lock_path, os.O_RDONLY | os.O_CREAT, 0o644)
        except OSError as e:
            raise RegistryError(f"Failed to open lockfile {lock_path}: {e}") from e
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise RegistryError(
                    f"Another nhctl process is updating {self.profile} (lockfile: {lock_path})"
                ) from None
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def writable(self) -> bool:
        return os.access(self.profile.parent, os.W_OK)

    def _elevated(self, elevator: "Elevator | None", argv: list[str], what: str):
        if elevator is None:
            raise RegistryError(f"{self.profile.parent} is not writable and elevation is unavailable")
        code, tail = elevator.run(argv)
        if code != 0:
            error = RegistryError(f"Failed to {what} (exit status {code})")
            error.diagnostics = tuple(tail)
            raise error

    def append(self, closure: Path, elevator: "Elevator | None" = None) -> Generation:
        """Record closure as a new current generation."""
        closure = Path(os.path.realpath(closure))
        with self.locked():
            existing = self.generations()
            number = existing[-1].number + 1 if existing else 1
            if self.writable():
                link = self._link(number)
                try:
                    link.symlink_to(closure)
                    publish_link(Path(link.name), self.profile)
                except OSError as e:
                    raise RegistryError(f"Failed to record generation {number}: {e}") from e
            else:
                self._elevated(elevator, [self.nix_env, "--profile", str(self.profile), "--set", str(closure)],
                               f"set {self.profile}")

            recorded = self.current()
            if recorded is None or recorded.closure != closure:
                raise RegistryError(f"{self.profile} does not point at {closure} after recording it")
            return recorded

    def switch_to(self, generation: Generation, elevator: "Elevator | None" = None):
        """Point the profile at an existing generation without touching any record."""
        with self.locked():
            if self.writable():
                try:
                    publish_link(Path(generation.link.name), self.profile)
                except OSError as e:
                    raise RegistryError(f"Failed to switch {self.profile}: {e}") from e
            else:
                self._elevated(
                    elevator,
                    [self.nix_env, "--profile", str(self.profile), "--switch-generation", str(generation.number)],
                    f"switch {self.profile} to generation {generation.number}",
                )
        if self._current_number() != generation.number:
            raise RegistryError(f"{self.profile} is not at generation {generation.number} after switching")


def print_generations(registry: GenerationRegistry):
    """Print generations newest first."""
    generations = registry.generations()
    if not generations:
        print(f"No generations found in {registry.profile}")
        return
    print(f"{'Generation':<12}{'Build date':<22}{'Current':<9}Specialisations")
    for g in reversed(generations):
        built = datetime.fromtimestamp(g.created_at).strftime("%Y-%m-%d %H:%M:%S")
        current = "*" if g.current else ""
        print(f"{g.number:<12}{built:<22}{current:<9}{', '.join(g.specialisations()) or '-'}")


# =============================================================================
# Activation
# =============================================================================

@dataclass
class ActivationRequest:
    """Everything the user asked for in one invocation."""
    platform: PlatformKind
    mode: Mode
    target: TargetInput = field(default_factory=TargetInput)
    specialisation: str | None = None
    no_specialisation: bool = False
    confirm: ConfirmPolicy = 'auto'
    diff: DiffPolicy = 'auto'
    dry: bool = False
    allow_elevation: bool = True
    bypass_root_check: bool = False
    askpass: str | None = None
    preserve_env: tuple[str, ...] = DEFAULT_PRESERVE_ENV
    out_link: Path | None = None
    nom: bool = True
    no_checks: bool = False
    backup_extension: str | None = None
    install_bootloader: bool = False


@dataclass
class ActivationStep:
    """One command of a platform's activation."""
    argv: tuple[str, ...]
    elevate: bool
    message: str
    env: dict[str, str] = field(default_factory=dict)
    missing_hint: str | None = None


Phase = Literal['activate', 'commit']

MISSING_SWITCH_TO_CONFIGURATION = (
    "The 'switch-to-configuration' binary is missing from the built configuration.\n"
    "This typically happens when 'system.switch.enable' is set to false in your\n"
    "NixOS configuration. Remove that setting or set it to true."
)


def os_steps(phase: Phase, mode: Mode, closure: Closure, variant: Path,
             request: ActivationRequest) -> list[ActivationStep]:
    env = {"NIXOS_INSTALL_BOOTLOADER": "1"} if request.install_bootloader else {}
    if phase == 'activate':
        actions = {'switch': "test", 'test': "test", 'rollback': "switch"}
        if mode not in actions:
            return []
        return [ActivationStep(
            argv=(str(variant / "bin/switch-to-configuration"), actions[mode]),
            elevate=True,
            message="Activating configuration",
            env=env,
            missing_hint=MISSING_SWITCH_TO_CONFIGURATION,
        )]
    if mode in ('switch', 'boot'):
        return [ActivationStep(
            argv=(str(closure.path / "bin/switch-to-configuration"), "boot"),
            elevate=True,
            message="Adding configuration to bootloader",
            env=env,
            missing_hint=MISSING_SWITCH_TO_CONFIGURATION,
        )]
    return []


def darwin_steps(phase: Phase, mode: Mode, closure: Closure, variant: Path,
                 request: ActivationRequest) -> list[ActivationStep]:
    if phase != 'activate' or mode not in ('switch', 'rollback'):
        return []
    # Older nix-darwin activates per user without root
    activate_user = closure.path / "activate-user"
    try:
        elevate = "# nix-darwin: deprecated" in activate_user.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        elevate = True
    except OSError as e:
        raise ActivationError(f"Failed to read {activate_user}: {e}") from e
    return [ActivationStep(
        argv=(str(variant / "sw/bin/darwin-rebuild"), "activate"),
        elevate=elevate,
        message="Activating configuration",
    )]


def home_steps(phase: Phase, mode: Mode, closure: Closure, variant: Path,
               request: ActivationRequest) -> list[ActivationStep]:
    if phase != 'activate' or mode != 'switch':
        return []
    env = {}
    if request.backup_extension:
        print(f"Using {request.backup_extension} as the backup extension")
        env["HOME_MANAGER_BACKUP_EXT"] = request.backup_extension
    return [ActivationStep(
        argv=(str(variant / "activate"),),
        elevate=False,
        message="Activating configuration",
        env=env,
    )]


ACTIVATION_STEPS: dict[str, Callable[..., list[ActivationStep]]] = {
    'os': os_steps,
    'home': home_steps,
    'darwin': darwin_steps,
}


# =============================================================================
# Outcomes
# =============================================================================

@dataclass(frozen=True)
class Committed:
    generation: Generation


@dataclass(frozen=True)
class Activated:
    """Activated without recording a generation (test mode)."""
    closure: Closure
    specialisation: str | None = None


@dataclass(frozen=True)
class BuiltOnly:
    closure: Closure


@dataclass(frozen=True)
class Failed:
    """Where and why a run stopped, with the last good closure for a retry."""
    stage: Stage
    kind: str
    message: str
    mode: str
    closure: Closure | None = None
    diagnostics: tuple[str, ...] = ()
    rolled_back: bool = False

    def describe(self) -> str:
        lines = [f"Error: {self.kind} while {self.stage} ({self.mode}): {self.message}"]
        if self.diagnostics:
            lines.append("Last output:")
            lines += [f"  {line}" for line in self.diagnostics]
        if self.rolled_back:
            lines.append("The profile was restored to the previously active generation.")
        elif self.closure is not None and self.stage in ('activating', 'committing'):
            lines.append(f"The built configuration is still available at {self.closure.path}")
        return "\n".join(lines)


Outcome = Committed | Activated | BuiltOnly | Failed


def prompt_confirmation(report: DiffReport) -> bool:
    """Ask on the terminal. Anything but yes declines."""
    try:
        answer = input("Apply the config? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


class ActivationCoordinator:
    """
    Drives one request through
    resolving -> building -> diffing -> awaiting-confirmation -> activating -> committing -> done.

    Every failure ends in a Failed outcome carrying the stage it happened in
    and the last built closure, which can be passed back to run(resume=...)
    to retry activation without rebuilding.
    """

    def __init__(self, request: ActivationRequest, environ: Mapping[str, str] | None = None,
                 confirm: Callable[[DiffReport], bool] | None = None,
                 programs: Programs | None = None, tool_info: ToolInfo | None = None,
                 registry: GenerationRegistry | None = None, paths: ProfilePaths | None = None,
                 elevator: Elevator | None = None, lookup: AttributeLookup | None = None,
                 euid: int | None = None):
        self.request = request
        self.platform = PLATFORMS[request.platform]
        self.environ = dict(os.environ if environ is None else environ)
        self.confirm = confirm or prompt_confirmation
        self.programs = programs or Programs()
        self.tool_info = tool_info
        self.paths = paths or default_paths(request.platform, self.environ)
        self.registry = registry or GenerationRegistry(self.paths.profile, self.programs.nix_env)
        self.euid = os.geteuid() if euid is None else euid
        self.elevator = elevator or Elevator(
            self.environ,
            allow_list=request.preserve_env,
            askpass=request.askpass,
            allow=request.allow_elevation,
            program=self.programs.sudo,
            euid=self.euid,
        )
        self.lookup = lookup
        self.state: Stage = 'resolving'
        self.history: list[Stage] = []
        self.target: BuildTarget | None = None
        self.closure: Closure | None = None
        self.report: DiffReport | None = None
        self._gated = False

    def _enter(self, stage: Stage):
        debug(f"{self.state} -> {stage}")
        self.state = stage
        self.history.append(stage)

    def _fail(self, error: OrchestrationError) -> Failed:
        stage = self.state
        self._enter('failed')
        return Failed(
            stage=stage,
            kind=error.kind,
            message=str(error),
            mode=self.request.mode,
            closure=self.closure,
            diagnostics=tuple(error.diagnostics),
        )

    def _gate(self, flake: bool):
        """Environment checks, once per coordinator."""
        if self._gated:
            return
        if self.request.no_checks:
            debug("Skipping environment checks")
        else:
            tool = self.tool_info or inspect_tool(self.programs)
            check_environment(tool, flake)
        self._gated = True

    def _current_closure(self) -> Closure | None:
        try:
            current = self.registry.current()
        except OSError as e:
            warn(f"Failed to read {self.registry.profile}: {e}")
            return None
        if current is None:
            return None
        hostname = None if self.platform.kind == 'home' else system_hostname()
        return current.as_closure(self.platform.kind, hostname)

    def _diff(self, candidate: Closure) -> DiffReport:
        self._enter('diffing')
        print("\n=== Comparing changes ===")
        report = diff_closures(self._current_closure(), candidate, self.programs, self.request.diff)
        report.print_summary()
        self.report = report
        return report

    def _await_confirmation(self, report: DiffReport):
        self._enter('awaiting-confirmation')
        policy = self.request.confirm
        if policy == 'never':
            return
        if policy == 'auto' and not report.has_changes():
            debug("No changes, not asking for confirmation")
            return
        if not self.confirm(report):
            raise UserAborted("User rejected the new configuration")

    def _run_steps(self, phase: Phase, mode: Mode, closure: Closure, variant: Path):
        for step in ACTIVATION_STEPS[self.platform.kind](phase, mode, closure, variant, self.request):
            executable = Path(step.argv[0])
            if not executable.exists():
                raise ActivationError(step.missing_hint or f"{executable} is missing from the built configuration")
            print(f"\n=== {step.message} ===")
            if step.elevate:
                code, tail = self.elevator.run(step.argv, step.env)
            else:
                try:
                    code, tail = run_streaming(step.argv, env={**self.environ, **step.env})
                except OSError as e:
                    raise ActivationError(f"Failed to run {executable}: {e}") from e
            if code != 0:
                raise ActivationError(f"{step.message} failed (exit status {code})", tail)

    def _commit(self, closure: Closure) -> Generation:
        self._enter('committing')
        if self.platform.records_on_activate:
            current = self.registry.current()
            if current is not None and current.closure == closure.path:
                debug(f"Activation already recorded generation {current.number}")
                return current
        return self.registry.append(closure.path, self.elevator)

    def _activate(self, closure: Closure) -> Outcome:
        request = self.request
        self._enter('activating')
        specialisation = select_specialisation(
            closure, request.specialisation, request.no_specialisation, self.paths.marker
        )
        if specialisation:
            print(f"Using specialisation {specialisation}")
        variant = closure.variant(specialisation)
        self._run_steps('activate', request.mode, closure, variant)

        if request.mode not in PERSISTENT_MODES:
            self._enter('done')
            return Activated(closure=closure, specialisation=specialisation)

        generation = self._commit(closure)
        self._run_steps('commit', request.mode, closure, variant)
        self._enter('done')
        print(f"\nGeneration {generation.number} is now current")
        return Committed(replace(generation, specialisation=specialisation))

    def run(self, resume: Closure | None = None) -> Outcome:
        """
        Run the request to completion.

        With resume, the given closure (from an earlier Failed outcome) is
        activated directly: nothing is rebuilt, diffed or confirmed again.
        """
        request = self.request
        try:
            self._enter('resolving')
            check_not_root(self.platform, self.euid, request.bypass_root_check)
            self._gate(uses_flakes(request.target, self.platform, self.environ))

            if resume is not None:
                if resume.platform != self.platform.kind:
                    raise ResolveError(f"Cannot resume a {resume.platform} closure as {self.platform.kind}")
                self.closure = resume
                debug(f"Resuming with {resume.path}")
                if request.mode in BUILD_ONLY_MODES:
                    self._enter('done')
                    return BuiltOnly(resume)
                return self._activate(resume)

            lookup = self.lookup or nix_eval_lookup(self.programs, request.target.extra_args)
            self.target = resolve_target(request.target, self.platform.kind, request.mode,
                                         self.environ, lookup)
            print(f"Building {self.target.reference}")

            self._enter('building')
            print(f"\n=== Building {self.platform.label} configuration ===")
            self.closure = build_closure(self.target, self.programs, request.out_link, request.nom)
            if request.mode in BUILD_ONLY_MODES:
                self._enter('done')
                return BuiltOnly(self.closure)

            report = self._diff(self.closure)
            if request.dry:
                if request.confirm == 'always':
                    warn("--ask has no effect as a dry run was requested")
                self._enter('done')
                return BuiltOnly(self.closure)

            self._await_confirmation(report)
            return self._activate(self.closure)
        except OrchestrationError as e:
            return self._fail(e)

    def rollback(self, to: int | None = None) -> Outcome:
        """
        Make an earlier generation current again and activate it.

        If activation fails the profile is pointed back at the generation
        that was current before, and the outcome is marked rolled back.
        """
        request = self.request
        previous: Generation | None = None
        switched = False
        try:
            self._enter('resolving')
            if not self.platform.rollback:
                raise ResolveError(f"Rollback is not supported for {self.platform.label}")
            check_not_root(self.platform, self.euid, request.bypass_root_check)
            self._gate(False)

            generation = self.registry.select_rollback(to)
            previous = self.registry.current()
            self.closure = generation.as_closure(self.platform.kind, system_hostname())
            print(f"Rolling back to generation {generation.number}")

            report = self._diff(self.closure)
            if request.dry:
                self._enter('done')
                return BuiltOnly(self.closure)
            self._await_confirmation(report)

            self._enter('activating')
            try:
                specialisation = select_specialisation(
                    self.closure, request.specialisation, request.no_specialisation, self.paths.marker
                )
            except UnknownSpecialisation as e:
                warn(f"{e}, using the base configuration")
                specialisation = None

            self.registry.switch_to(generation, self.elevator)
            switched = True
            self._run_steps('activate', 'rollback', self.closure, self.closure.variant(specialisation))
        except OrchestrationError as e:
            failure = self._fail(e)
            if not switched or previous is None:
                return failure
            try:
                self.registry.switch_to(previous, self.elevator)
            except OrchestrationError as restore_error:
                print(f"Error: Failed to restore generation {previous.number}: {restore_error}")
                return failure
            print(f"Restored {self.registry.profile} to generation {previous.number}")
            self._enter('rolled-back')
            return replace(failure, rolled_back=True)

        self._enter('done')
        print(f"\nRolled back to generation {generation.number}")
        return Committed(replace(generation, current=True, specialisation=specialisation))


# =============================================================================
# Command line
# =============================================================================

MODE_HELP = {
    'switch': "Build, activate and make it the boot default",
    'boot': "Build and make it the boot default",
    'test': "Build and activate without recording a generation",
    'build': "Build only",
    'build-vm': "Build a virtual machine for the configuration",
}


def split_passthrough(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split at the first '--'; everything after goes to the builder untouched."""
    argv = list(argv)
    if "--" in argv:
        i = argv.index("--")
        return argv[:i], argv[i + 1:]
    return argv, []


def add_activation_args(p: argparse.ArgumentParser, kind: str):
    p.add_argument("-s", "--specialisation", help="Activate this specialisation")
    p.add_argument("-S", "--no-specialisation", action="store_true", help="Activate the base configuration")
    p.add_argument("-a", "--ask", action="store_true", help="Always ask before activating")
    p.add_argument("--confirm", choices=["always", "never", "auto"], default="auto",
                   help="When to ask before activating (auto: only if the diff has changes)")
    p.add_argument("-d", "--diff", choices=["always", "never", "auto"], default="auto",
                   help="When to show the diff (default: auto)")
    p.add_argument("-n", "--dry", action="store_true", help="Build and diff, but don't activate")
    p.add_argument("--bypass-root-check", action="store_true", help="Allow running as root")
    p.add_argument("--no-elevate", action="store_true", help="Never run sudo")
    p.add_argument("--askpass", help="Askpass helper for sudo (default: $NH_SUDO_ASKPASS)")
    p.add_argument("--preserve-env", action="append", default=[], metavar="VAR",
                   help="Also pass VAR to elevated commands")
    p.add_argument("--no-checks", action="store_true", help="Skip Nix version and feature checks")
    if kind == 'home':
        p.add_argument("-b", "--backup-extension", help="Extension for files Home-Manager moves aside")
    if kind == 'os':
        p.add_argument("--install-bootloader", action="store_true", help="Reinstall the bootloader")


def add_target_args(p: argparse.ArgumentParser, kind: str, mode: str):
    p.add_argument("installable", nargs="?",
                   help="Flake reference (ref#attr), or attribute path with --file")
    p.add_argument("-f", "--file", help="Legacy Nix file to build instead of a flake")
    p.add_argument("--arg", nargs=2, action="append", default=[], metavar=("NAME", "EXPR"),
                   help="Argument for --file")
    p.add_argument("--argstr", nargs=2, action="append", default=[], metavar=("NAME", "STRING"),
                   help="String argument for --file")
    p.add_argument("-H", "--hostname", help="Configuration hostname (default: this machine)")
    p.add_argument("-o", "--out-link", type=Path, help=f"Result link (default: ./{DEFAULT_OUT_LINK})")
    p.add_argument("--no-nom", action="store_true", help="Don't use nix-output-monitor")
    if kind == 'home':
        p.add_argument("-c", "--configuration", help="Home-Manager configuration name")
    if mode == 'build-vm':
        p.add_argument("-B", "--with-bootloader", action="store_true", help="Build a VM with a bootloader")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nhctl",
        description="nhctl - build and activate Nix configurations",
        epilog="Arguments after -- are passed to the builder verbatim.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output")
    platforms = parser.add_subparsers(dest="platform", required=True)

    for kind, platform in PLATFORMS.items():
        p_platform = platforms.add_parser(kind, help=f"Manage {platform.label} configurations")
        actions = p_platform.add_subparsers(dest="action", required=True)
        for mode in MODE_HELP:
            if mode not in platform.modes:
                continue
            p_mode = actions.add_parser(mode, help=MODE_HELP[mode])
            add_target_args(p_mode, kind, mode)
            add_activation_args(p_mode, kind)
        if platform.rollback:
            p_rollback = actions.add_parser("rollback", help="Activate an earlier generation")
            p_rollback.add_argument("--to", type=int, metavar="N", help="Generation number (default: previous)")
            add_activation_args(p_rollback, kind)
        p_gens = actions.add_parser("generations", help="List generations")
        p_gens.add_argument("-P", "--profile", type=Path, help="Profile to list")

    return parser


def request_from_args(args: argparse.Namespace, settings: Settings, passthrough: Sequence[str]) -> ActivationRequest:
    overrides: list[str] = []
    for name, value in getattr(args, "arg", []):
        overrides += ["--arg", name, value]
    for name, value in getattr(args, "argstr", []):
        overrides += ["--argstr", name, value]
    return ActivationRequest(
        platform=args.platform,
        mode=args.action,
        target=TargetInput(
            installable=getattr(args, "installable", None),
            file=getattr(args, "file", None),
            overrides=tuple(overrides),
            hostname=getattr(args, "hostname", None),
            configuration=getattr(args, "configuration", None),
            with_bootloader=getattr(args, "with_bootloader", False),
            extra_args=tuple(passthrough),
        ),
        specialisation=args.specialisation,
        no_specialisation=args.no_specialisation,
        confirm='always' if args.ask else args.confirm,
        diff=args.diff,
        dry=args.dry,
        allow_elevation=not args.no_elevate,
        bypass_root_check=args.bypass_root_check,
        askpass=args.askpass or settings.askpass,
        preserve_env=settings.preserve_env + tuple(args.preserve_env),
        out_link=getattr(args, "out_link", None),
        nom=not getattr(args, "no_nom", False),
        no_checks=args.no_checks or settings.no_checks,
        backup_extension=getattr(args, "backup_extension", None),
        install_bootloader=getattr(args, "install_bootloader", False),
    )


def report_outcome(outcome: Outcome) -> int:
    """Print the outcome; returns the exit code."""
    if isinstance(outcome, Failed):
        print(outcome.describe())
        return 1
    if isinstance(outcome, BuiltOnly):
        print(f"\nBuilt {outcome.closure.path}")
    elif isinstance(outcome, Activated):
        print(f"\nActivated {outcome.closure.path} (not added to the boot menu)")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """nhctl entry point."""
    global VERBOSE
    own, passthrough = split_passthrough(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(own)
    VERBOSE = args.verbose

    environ = dict(os.environ)
    settings = Settings.from_env(environ)

    if args.action == "generations":
        profile = args.profile or default_paths(args.platform, environ).profile
        print_generations(GenerationRegistry(profile))
        return 0

    if passthrough and args.action == "rollback":
        parser.error("rollback does not take builder arguments")

    request = request_from_args(args, settings, passthrough)
    coordinator = ActivationCoordinator(request, environ=environ)
    try:
        if args.action == "rollback":
            outcome = coordinator.rollback(args.to)
        else:
            outcome = coordinator.run()
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    return report_outcome(outcome)


if __name__ == "__main__":
    sys.exit(main())
