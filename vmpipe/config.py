"""Configuration loading and environment variable parsing for vmpipe."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmpipe.constants import (
    ARCH_ALIASES,
    BATCH_POLICIES,
    BOOT_BACKENDS,
    DEFAULT_BOOT_TIMEOUT,
    DEFAULT_KERNEL_CMDLINE,
    DEFAULT_OPERATION_TIMEOUT,
    DEFAULT_PROVISION_TIMEOUT,
    DEFAULT_READINESS_PATTERN,
    IDENTITY_RE,
    OPERATOR_IDENTITY,
    STORE_DIR,
    SUPPORTED_ARCHES,
    VALIDATOR_IDENTITY,
    WORK_DIR,
)
from vmpipe.exceptions import PipelineError
from vmpipe.models import (
    STAGE_ORDER,
    BootConfig,
    ExecutionConfig,
    IdentityConfig,
    PipelineConfig,
    ProvisionConfig,
    PublishConfig,
    Stage,
)
from vmpipe.utils import get_env, log, parse_int, parse_int_env


def load_config_file(config_path: Optional[Path]) -> Dict[str, Any]:
    if config_path is None:
        return {}
    if not config_path.exists():
        raise PipelineError(f"Pipeline config missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise PipelineError(f"Pipeline config {config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise PipelineError(f"Pipeline config {config_path} must be a YAML mapping, got {type(data).__name__}")
    return data


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise PipelineError(f"Config section '{name}' must be a mapping")
    return section


def _string_list(section: Dict[str, Any], key: str, label: str) -> List[str]:
    raw = section.get(key) or []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise PipelineError(f"{label} must be a list of strings")
    return [item for item in raw if item.strip()]


def _optional_path(raw: Any) -> Optional[Path]:
    if raw is None or not str(raw).strip():
        return None
    return Path(str(raw).strip()).expanduser()


def _parse_boot(section: Dict[str, Any]) -> BootConfig:
    backend = (get_env("VMPIPE_BOOT_BACKEND") or str(section.get("backend", "qemu"))).strip().lower()
    if backend not in BOOT_BACKENDS:
        supported = ", ".join(sorted(BOOT_BACKENDS))
        raise PipelineError(f"Unsupported boot backend '{backend}'. Supported: {supported}")

    arch_raw = (get_env("VMPIPE_ARCH") or str(section.get("arch", "x86_64"))).strip().lower()
    arch = ARCH_ALIASES.get(arch_raw, arch_raw)
    if arch not in SUPPORTED_ARCHES:
        supported = ", ".join(sorted(SUPPORTED_ARCHES.keys()))
        raise PipelineError(f"Unsupported arch '{arch_raw}'. Supported: {supported}")

    if get_env("VMPIPE_MEMORY") is not None:
        memory_mb = parse_int_env("VMPIPE_MEMORY", "2048", min_val=128)
    else:
        memory_mb = parse_int("boot.memory_mb", section.get("memory_mb", 2048), min_val=128)
    if get_env("VMPIPE_CPUS") is not None:
        cpus = parse_int_env("VMPIPE_CPUS", "2", max_val=256)
    else:
        cpus = parse_int("boot.cpus", section.get("cpus", 2), max_val=256)
    if get_env("VMPIPE_BOOT_TIMEOUT") is not None:
        timeout = parse_int_env("VMPIPE_BOOT_TIMEOUT", str(DEFAULT_BOOT_TIMEOUT))
    else:
        timeout = parse_int("boot.timeout", section.get("timeout", DEFAULT_BOOT_TIMEOUT))
    agent_timeout = parse_int("boot.agent_timeout", section.get("agent_timeout", 60))

    console = SUPPORTED_ARCHES[arch]["console"]
    cmdline = str(section.get("kernel_cmdline") or DEFAULT_KERNEL_CMDLINE).strip()
    if "console=" not in cmdline:
        cmdline = f"console={console} {cmdline}"

    readiness = str(section.get("readiness_pattern") or DEFAULT_READINESS_PATTERN)
    extra_args = section.get("extra_args") or []
    if isinstance(extra_args, str):
        extra_args = extra_args.split()

    return BootConfig(
        backend=backend,
        arch=arch,
        memory_mb=memory_mb,
        cpus=cpus,
        kernel_cmdline=cmdline,
        readiness_pattern=readiness,
        timeout=timeout,
        agent_timeout=agent_timeout,
        kernel_override=_optional_path(section.get("kernel")),
        initrd_override=_optional_path(section.get("initrd")),
        extra_args=[str(arg) for arg in extra_args],
    )


def _parse_identities(section: Dict[str, Any]) -> IdentityConfig:
    operator = str(section.get("operator", OPERATOR_IDENTITY)).strip()
    validator = str(section.get("validator", VALIDATOR_IDENTITY)).strip()
    for label, name in (("operator", operator), ("validator", validator)):
        if not IDENTITY_RE.match(name):
            raise PipelineError(f"identities.{label} '{name}' is not a valid guest user name")
    if operator == validator:
        raise PipelineError("identities.operator and identities.validator must be distinct")
    if "root" in (operator, validator):
        raise PipelineError("Guest identities must be unprivileged; 'root' is not allowed")
    create = section.get("create", True)
    return IdentityConfig(operator=operator, validator=validator, create=bool(create))


def _parse_provision(section: Dict[str, Any]) -> ProvisionConfig:
    smoke = section.get("smoke") or {}
    if not isinstance(smoke, dict):
        raise PipelineError("provision.smoke must be a mapping with 'binaries' and/or 'paths'")
    return ProvisionConfig(
        commands=_string_list(section, "commands", "provision.commands"),
        smoke_binaries=_string_list(smoke, "binaries", "provision.smoke.binaries"),
        smoke_paths=_string_list(smoke, "paths", "provision.smoke.paths"),
        timeout=parse_int("provision.timeout", section.get("timeout", DEFAULT_PROVISION_TIMEOUT)),
    )


def _parse_execution(section: Dict[str, Any]) -> ExecutionConfig:
    policy = (get_env("VMPIPE_BATCH_POLICY") or str(section.get("batch_policy", "run-all"))).strip().lower()
    if policy not in BATCH_POLICIES:
        raise PipelineError(f"Unsupported batch policy '{policy}'. Expected one of run-all, fail-fast.")
    if get_env("VMPIPE_OPERATION_TIMEOUT") is not None:
        timeout = parse_int_env("VMPIPE_OPERATION_TIMEOUT", str(DEFAULT_OPERATION_TIMEOUT))
    else:
        timeout = parse_int(
            "execution.operation_timeout", section.get("operation_timeout", DEFAULT_OPERATION_TIMEOUT)
        )
    return ExecutionConfig(batch_policy=policy, operation_timeout=timeout)


def _parse_publish(section: Dict[str, Any]) -> PublishConfig:
    raw = section.get("required_stages")
    if raw is None:
        required = [stage for stage in STAGE_ORDER if stage != Stage.PUBLISH]
    else:
        if not isinstance(raw, list):
            raise PipelineError("publish.required_stages must be a list")
        required = []
        for name in raw:
            try:
                stage = Stage(str(name).strip().lower())
            except ValueError:
                valid = ", ".join(s.value for s in STAGE_ORDER if s != Stage.PUBLISH)
                raise PipelineError(f"Unknown stage '{name}' in publish.required_stages. Valid: {valid}")
            if stage == Stage.PUBLISH:
                raise PipelineError("publish.required_stages cannot include 'publish'")
            required.append(stage)
    return PublishConfig(required_stages=required, flatten_image=bool(section.get("flatten_image", True)))


def parse_config(config_path: Optional[Path] = None) -> PipelineConfig:
    data = load_config_file(config_path)

    store_section = _section(data, "store")
    store_dir = Path(get_env("VMPIPE_STORE_DIR") or store_section.get("path") or STORE_DIR).expanduser()
    work_dir = Path(get_env("VMPIPE_WORK_DIR") or store_section.get("work_dir") or WORK_DIR).expanduser()

    boot = _parse_boot(_section(data, "boot"))
    if boot.timeout < 10:
        log("WARN", f"Boot timeout of {boot.timeout}s is unlikely to cover a full kernel boot")

    return PipelineConfig(
        store_dir=store_dir,
        work_dir=work_dir,
        boot=boot,
        identities=_parse_identities(_section(data, "identities")),
        provision=_parse_provision(_section(data, "provision")),
        execution=_parse_execution(_section(data, "execution")),
        publish=_parse_publish(_section(data, "publish")),
    )
