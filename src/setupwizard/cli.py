"""Command-line front end for the setup wizard.

    setupwizard [options] steps
    setupwizard [options] check
    setupwizard [options] run --answers answers.yaml [--seed] [--link]
    setupwizard [options] install [--seed] [--link] [--reset-schema]
    setupwizard [options] rollback | secret | reset

Exit code 0 on success, 1 on any failure.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import yaml

from setupwizard.core.config import ConfigResolver, WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.diagnostics import install_jsonl_sink
from setupwizard.core.errors import ConfigError, SetupWizardError
from setupwizard.core.events import EventBus, get_event_bus
from setupwizard.core.installer import InstallationResult, InstallOptions
from setupwizard.core.logging import apply_logging_policy, get_logger
from setupwizard.core.requirements import RequirementChecker
from setupwizard.core.schema import SchemaIntrospector
from setupwizard.core.steps import StepRegistry
from setupwizard.core.storage import SqliteStore
from setupwizard.core.validator import ValidationResult
from setupwizard.core.wizard import Wizard
from setupwizard.plugins import register_builtin_steps

log = get_logger(__name__)

DEFAULT_RUN_ID = "default"


def build_wizard(
    settings: WizardSettings,
    *,
    resolver: ConfigResolver | None = None,
    run_id: str = DEFAULT_RUN_ID,
    events: EventBus | None = None,
) -> Wizard:
    """Assemble registry, run context, store and introspector for one run."""
    registry = register_builtin_steps(StepRegistry(), settings)
    bus = events or get_event_bus()
    install_jsonl_sink(
        bus,
        path=settings.session_dir / "diagnostics.jsonl",
        enabled=settings.diagnostics_enabled,
    )
    context = RunContext.open(settings, run_id, events=bus)
    return Wizard(
        registry,
        context,
        SqliteStore(settings.database_path),
        SchemaIntrospector(settings.schema_paths),
        resolver=resolver,
    )


def parse_args(argv: list[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="setupwizard", add_help=True)
    ap.add_argument("--config", type=Path, default=None, help="user config file (YAML)")
    ap.add_argument("--app-root", dest="app_root", default=None)
    ap.add_argument("--run-id", dest="run_id", default=DEFAULT_RUN_ID)
    ap.add_argument("--dev", action="store_true", help="development override")
    verbosity = ap.add_mutually_exclusive_group()
    verbosity.add_argument("-q", "--quiet", action="store_true")
    verbosity.add_argument("-v", "--verbose", action="store_true")
    verbosity.add_argument("--debug", action="store_true")

    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("steps", help="list registered steps and their status")
    sub.add_parser("check", help="run the server requirement checks")

    def _install_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--seed", action="store_true", help="run seed data")
        p.add_argument("--link", action="store_true", help="create the storage link")
        p.add_argument("--reset-schema", dest="reset_schema", action="store_true")
        p.add_argument("--no-migrate", dest="no_migrate", action="store_true")

    run_p = sub.add_parser("run", help="submit every step from an answers file, then install")
    run_p.add_argument("--answers", type=Path, required=True)
    _install_flags(run_p)

    install_p = sub.add_parser("install", help="commit the staged data")
    _install_flags(install_p)

    sub.add_parser("rollback", help="revert the most recent migration batch")
    sub.add_parser("secret", help="generate and store a new application secret")
    sub.add_parser("reset", help="discard staged data of the run")
    return ap.parse_args(argv)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    cli_args: dict[str, Any] = {}
    if ns.app_root:
        cli_args["app_root"] = ns.app_root
    if ns.dev:
        cli_args["install"] = {"dev_override": True}
    level = "quiet" if ns.quiet else "verbose" if ns.verbose else "debug" if ns.debug else None
    if level:
        cli_args["logging"] = {"level": level}
    return cli_args


def _options(ns: argparse.Namespace) -> InstallOptions:
    return InstallOptions(
        run_schema_migration=not ns.no_migrate,
        run_seed=ns.seed,
        create_storage_link=ns.link,
        reset_schema=ns.reset_schema,
    )


def _print_errors(result: ValidationResult) -> None:
    for path, messages in result.errors.items():
        for msg in messages:
            print(f"  {result.step_id}.{path}: {msg}")


def _print_install(result: InstallationResult) -> int:
    print(f"{result.status}: {result.message}")
    if result.committed_steps:
        print("committed: " + ", ".join(result.committed_steps))
    return 0 if result.ok else 1


def _load_answers(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read answers file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Answers file {path} must map step ids to form data")
    return data


def cmd_steps(wizard: Wizard) -> int:
    active = {d.id for d in wizard.sequence()}
    done = set(wizard.context.state.completed_steps)
    for d in wizard.registry.all():
        status = "done" if d.id in done else "pending" if d.id in active else "hidden"
        deps = f"  (after: {', '.join(sorted(d.depends_on))})" if d.depends_on else ""
        print(f"{d.position:>4}  {d.id:<16} {status:<8} {d.title}{deps}")
    return 0


def cmd_check(settings: WizardSettings) -> int:
    report = RequirementChecker.from_settings(settings).check()
    for r in report.results:
        mark = "ok  " if r.ok else "FAIL"
        print(f"[{mark}] {r.kind:<10} {r.name:<24} required={r.required} actual={r.actual}")
    return 0 if report.ok else 1


def cmd_run(wizard: Wizard, answers_path: Path, options: InstallOptions) -> int:
    answers = _load_answers(answers_path)
    wizard.enter()
    while (step := wizard.next_step()) is not None:
        data = answers.get(step.id) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Answers for step '{step.id}' must be a mapping")
        result = wizard.submit(step.id, data)
        if not result.passed:
            print(f"step '{step.id}' failed:")
            _print_errors(result)
            return 1
        print(f"step '{step.id}' completed")
    return _print_install(wizard.install(options))


def run(argv: list[str]) -> int:
    ns = parse_args(argv)
    try:
        resolver = ConfigResolver(cli_args=_cli_overrides(ns), user_config_path=ns.config)
        apply_logging_policy(resolver.resolve_logging_policy())
        settings = WizardSettings.from_resolver(resolver)

        if ns.command == "check":
            return cmd_check(settings)

        wizard = build_wizard(settings, resolver=resolver, run_id=ns.run_id)
        if ns.command == "steps":
            return cmd_steps(wizard)
        if ns.command == "run":
            return cmd_run(wizard, ns.answers, _options(ns))
        if ns.command == "install":
            return _print_install(wizard.install(_options(ns)))
        if ns.command == "rollback":
            ok = wizard.rollback()
            print("rolled back" if ok else "nothing rolled back")
            return 0 if ok else 1
        if ns.command == "secret":
            print(wizard.generate_secret())
            return 0
        if ns.command == "reset":
            wizard.reset()
            print(f"run '{wizard.run_id}' reset")
            return 0
    except SetupWizardError as e:
        log.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 1

    log.error(f"unknown command: {ns.command}")
    return 1


def main() -> None:
    raise SystemExit(run(sys.argv[1:]))
