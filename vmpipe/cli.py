"""CLI entry point for the vmpipe pipeline."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import Callable, List, Optional

from vmpipe.artifacts import ArtifactManager
from vmpipe.config import parse_config
from vmpipe.constants import DEFAULT_CONFIG_PATH, LATEST_GOOD_POINTER
from vmpipe.exceptions import PipelineError, RunCancelled
from vmpipe.models import PipelineConfig, RunInputs, ScenarioSet
from vmpipe.orchestrator import Orchestrator
from vmpipe.scenarios import load_scenario_set
from vmpipe.utils import get_env_bool, kvm_available, log


def show_config(cfg: PipelineConfig) -> None:
    """Print the resolved pipeline configuration."""
    print(f"  store_dir: {cfg.store_dir}")
    print(f"  work_dir: {cfg.work_dir}")
    for section in ("boot", "identities", "provision", "execution", "publish"):
        value = getattr(cfg, section)
        print(f"  {section}:")
        for field in dataclasses.fields(value):
            sub_value = getattr(value, field.name)
            if isinstance(sub_value, list):
                sub_value = ", ".join(getattr(v, "value", str(v)) for v in sub_value) or "-"
            print(f"    {field.name}: {sub_value}")


def list_bundles(artifacts: ArtifactManager) -> None:
    bundles = artifacts.list_bundles()
    if not bundles:
        log("WARN", f"No bundles found in {artifacts.bundles_dir}")
        return
    latest = artifacts.latest_good()
    max_key = max(len(str(b.get("version_tag", ""))) for b in bundles)
    for meta in bundles:
        tag = str(meta.get("version_tag", "?"))
        kind = "partial" if meta.get("partial") else "full"
        marker = f"  <- {LATEST_GOOD_POINTER}" if tag == latest else ""
        print(
            f"  {tag:<{max_key}}  {meta.get('created_at', '?')}  {kind:<7}  "
            f"verdict={meta.get('verdict', '?')} commit={str(meta.get('commit', '?'))[:12]}{marker}"
        )


def dry_run(cfg: PipelineConfig, scenario_set: ScenarioSet, baseline: str) -> int:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Scenario Set ===")
    for scenario in scenario_set.scenarios:
        log("INFO", f"{scenario.name}: {len(scenario.operations)} operation(s), expected={scenario.expected_ref or '-'}")
        for op in scenario.operations:
            log("DEBUG", f"  {op.id} as {op.identity}: {op.command}")
    log("INFO", "=== Environment Checks ===")
    if kvm_available():
        log("SUCCESS", "KVM:       available (/dev/kvm)")
    elif get_env_bool("REQUIRE_KVM", False):
        log("ERROR", "KVM:       NOT available (REQUIRE_KVM=1 is set, boot will fail)")
    else:
        log("WARN", "KVM:       NOT available (will use TCG, 10-50x slower)")
    artifacts = ArtifactManager(cfg.store_dir)
    try:
        tag = artifacts.resolve_tag(baseline)
        artifacts.read_metadata(tag)
        log("SUCCESS", f"Baseline:  {tag} (found)")
    except PipelineError as exc:
        log("ERROR", f"Baseline:  {exc}")
        return 1
    log("INFO", "=== Dry-run complete (no VM started) ===")
    return 0


def _install_signal_handlers(finishing: Optional[Callable[[], bool]] = None) -> dict:
    """Turn the first SIGTERM/SIGINT into RunCancelled; ignore signals once the run is finishing."""
    state = {"cancelled": False}

    def _cancel(signum, frame):
        name = signal.Signals(signum).name
        if state["cancelled"]:
            log("WARN", f"{name} received again; teardown already in progress")
            return
        if finishing is not None and finishing():
            log("WARN", f"{name} received during teardown and publish; letting the run finish")
            return
        state["cancelled"] = True
        raise RunCancelled(name)

    previous = {
        signal.SIGTERM: signal.signal(signal.SIGTERM, _cancel),
        signal.SIGINT: signal.signal(signal.SIGINT, _cancel),
    }
    return previous


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="vmpipe: boot, provision, validate and publish a VM image")
    parser.add_argument("--baseline", default=LATEST_GOOD_POINTER, metavar="TAG", help="Baseline bundle version tag")
    parser.add_argument("--scenarios", type=Path, metavar="FILE", help="Scenario set YAML file")
    parser.add_argument("--commit", metavar="SHA", help="Commit hash under test")
    parser.add_argument("--pipeline-id", metavar="ID", help="CI pipeline identifier")
    parser.add_argument("--config", type=Path, default=None, metavar="FILE", help="Pipeline config YAML")
    parser.add_argument("--report", type=Path, default=None, metavar="FILE", help="Write the run report here")
    parser.add_argument("--list-bundles", action="store_true", help="List bundles in the store and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and scenario set, then exit")
    args = parser.parse_args(argv)

    config_path = args.config
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH

    try:
        cfg = parse_config(config_path)
    except PipelineError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    if args.list_bundles:
        list_bundles(ArtifactManager(cfg.store_dir))
        return 0

    if args.scenarios is None:
        parser.error("--scenarios is required")

    try:
        scenario_set = load_scenario_set(args.scenarios, cfg.identities)
    except PipelineError as exc:
        log("ERROR", str(exc))
        return 1

    if args.dry_run:
        return dry_run(cfg, scenario_set, args.baseline)

    missing = [flag for flag, value in (("--commit", args.commit), ("--pipeline-id", args.pipeline_id)) if not value]
    if missing:
        parser.error(f"{' and '.join(missing)} required for a pipeline run")

    inputs = RunInputs(
        baseline_tag=args.baseline,
        scenario_set=args.scenarios,
        commit=args.commit,
        pipeline_id=args.pipeline_id,
    )
    previous: dict = {}
    try:
        orchestrator = Orchestrator(cfg, inputs, scenario_set=scenario_set, report_path=args.report)
        previous = _install_signal_handlers(lambda: orchestrator.finishing)
        result = orchestrator.run()
        return result.exit_code
    except PipelineError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
