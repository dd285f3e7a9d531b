import argparse
import asyncio
import signal
import sys
from typing import Any, Callable, Coroutine

import structlog
from prometheus_client import start_http_server

from llm_meter.cli import parse_args
from llm_meter.config import (
    Config,
    ProviderRegistry,
    ensure_initialized,
    load_config,
    save_config,
)
from llm_meter.credentials import CredentialStore
from llm_meter.errors import (
    MeterError,
    UnsupportedExportFormatError,
    UnsupportedProviderError,
)
from llm_meter.export import export_costs, to_csv, to_json
from llm_meter.logging import setup_logging
from llm_meter.metrics import MetricsUpdater
from llm_meter.models import (
    ConnectionTestResult,
    DashboardSummary,
    OutcomeStatus,
    ProviderSettings,
    TimeWindow,
)
from llm_meter.provider.registry import supported_providers
from llm_meter.service import open_service
from llm_meter.storage import SnapshotStore

logger = structlog.get_logger()

EXPORT_FORMATS = ("json", "csv")


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9185' or '0.0.0.0:9185'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _supported(name: "str") -> "str":
    name = name.strip().lower()
    if name not in supported_providers():
        raise UnsupportedProviderError(name)
    return name


def _print_result(result: "ConnectionTestResult | None") -> "None":
    if result is None:
        print("no connection test result")
        return
    status = f" http={result.http_status}" if result.http_status else ""
    print(
        f"{result.provider}: {result.outcome.value}{status} "
        f"in {result.duration:.2f}s - {result.detail or ''}".rstrip()
    )


def cmd_init(config: "Config", args: "argparse.Namespace") -> "int":
    ensure_initialized(config)
    print(f"config: {config.config_path}")
    print(f"database: {config.db_path}")
    return 0


def cmd_add_provider(config: "Config", args: "argparse.Namespace") -> "int":
    name = _supported(args.name)
    registry = ProviderRegistry(config)
    registry.add(
        name,
        ProviderSettings(
            base_url=args.base_url or None,
            organization_id=args.organization_id or None,
        ),
    )
    save_config(config)
    if args.api_key:
        CredentialStore().set_api_key(name, args.api_key)

    print(
        f"Registered provider '{name}' (disabled). "
        f"Run 'llm-meter enable {name}' to test and enable it."
    )
    return 0


def cmd_remove_provider(config: "Config", args: "argparse.Namespace") -> "int":
    name = args.name.strip().lower()
    ProviderRegistry(config).remove(name)
    save_config(config)
    if not args.keep_key:
        CredentialStore().delete_api_key(name)
    print(f"Removed provider '{name}'.")
    return 0


def cmd_disable(config: "Config", args: "argparse.Namespace") -> "int":
    name = args.name.strip().lower()
    ProviderRegistry(config).disable(name)
    save_config(config)
    print(f"Disabled provider '{name}'.")
    return 0


def cmd_providers(config: "Config", args: "argparse.Namespace") -> "int":
    registry = ProviderRegistry(config)
    credentials = CredentialStore()
    names = registry.names()
    if not names:
        print("no providers configured")
        return 0

    for name in names:
        provider = registry.get(name)
        state = "enabled" if provider.enabled else "disabled"
        key = "key" if credentials.has_api_key(name) else "no key"
        print(f"{name}\t{state}\t{key}")
    return 0


async def _test(config: "Config", args: "argparse.Namespace") -> "int":
    name = _supported(args.name)
    async with open_service(config) as service:
        result = await service.test_provider(name)
    _print_result(result)
    return 0 if result is not None and result.succeeded else 1


async def _enable(config: "Config", args: "argparse.Namespace") -> "int":
    name = _supported(args.name)
    async with open_service(config) as service:
        result = await service.test_provider(name)
        _print_result(result)
        # raises ProviderNotVerifiedError unless the test passed
        service.registry.enable(name)
    save_config(config)
    print(f"Enabled provider '{name}'.")
    return 0


async def _refresh(config: "Config", args: "argparse.Namespace") -> "int":
    window = TimeWindow.parse(args.window)
    async with open_service(config) as service:
        report = await service.refresh(window, args.providers)

    if not report.outcomes:
        print("no enabled providers")
        return 0

    for outcome in report.outcomes:
        line = f"{outcome.provider}\t{outcome.status.value}"
        if outcome.status is OutcomeStatus.OK:
            line += f"\trecords={outcome.records_written}"
            if outcome.skipped_records:
                line += f"\tskipped={outcome.skipped_records}"
        else:
            line += f"\t{outcome.reason}\t{outcome.message}"
        print(line)

    failed = [o for o in report.outcomes if o.status is OutcomeStatus.FAILED]
    return 1 if failed else 0


def cmd_summary(config: "Config", args: "argparse.Namespace") -> "int":
    window = TimeWindow.parse(args.window)
    # reads must not create the data directory or database
    if not config.db_path.exists():
        summary = DashboardSummary(
            window=window,
            total_tokens=0,
            total_cost=0.0,
            by_provider=[],
            by_model=[],
        )
    else:
        with SnapshotStore(config.db_path) as store:
            summary = store.summary(window)

    print(f"window: {summary.window.label}")
    print(f"total tokens: {summary.total_tokens}")
    print(f"total cost: ${summary.total_cost:.4f}")
    for provider, cost in summary.by_provider:
        print(f"  {provider}\t${cost:.4f}")
    if summary.by_model:
        print("top models:")
        for model, cost in summary.by_model:
            print(f"  {model}\t${cost:.4f}")
    return 0


def cmd_export(config: "Config", args: "argparse.Namespace") -> "int":
    fmt = args.format.strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise UnsupportedExportFormatError(args.format)

    if not config.db_path.exists():
        text = to_json([]) if fmt == "json" else to_csv([])
    else:
        with SnapshotStore(config.db_path) as store:
            text = export_costs(store, fmt)
    print(text, end="" if text.endswith("\n") else "\n")
    return 0


async def _watch(config: "Config", args: "argparse.Namespace") -> "int":
    window = TimeWindow.parse(args.window)
    if args.refresh_seconds is not None:
        config.refresh_seconds = args.refresh_seconds

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    async with open_service(config, metrics=MetricsUpdater()) as service:
        if not service.registry.enabled():
            logger.warning("no_enabled_providers")

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the service
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, service.stop)

        try:
            await service.run(window)
        finally:
            logger.info("shutting_down")
    logger.info("shutdown_complete")
    return 0


def _sync(
    coro: "Callable[[Config, argparse.Namespace], Coroutine[Any, Any, int]]",
) -> "Callable[[Config, argparse.Namespace], int]":
    def run(config: "Config", args: "argparse.Namespace") -> "int":
        return asyncio.run(coro(config, args))

    return run


COMMANDS: "dict[str, Callable[[Config, argparse.Namespace], int]]" = {
    "init": cmd_init,
    "add-provider": cmd_add_provider,
    "remove-provider": cmd_remove_provider,
    "test": _sync(_test),
    "enable": _sync(_enable),
    "disable": cmd_disable,
    "providers": cmd_providers,
    "refresh": _sync(_refresh),
    "summary": cmd_summary,
    "export": cmd_export,
    "watch": _sync(_watch),
}


def main(argv: "list[str] | None" = None) -> "int":
    config, args = parse_args(argv)
    setup_logging(config.log_level, config.log_format)

    try:
        config = load_config(config)
        return COMMANDS[args.command](config, args)
    except MeterError as exc:
        logger.debug("command_failed", command=args.command, reason=exc.reason)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
