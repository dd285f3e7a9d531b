import argparse

from llm_meter.config import Config
from llm_meter.logging import LOG_FORMATS
from llm_meter.models import TimeWindow

WINDOW_CHOICES = [w.label for w in TimeWindow]


def _add_window(parser: "argparse.ArgumentParser") -> "None":
    # validated by TimeWindow.parse so the error names the supported set
    parser.add_argument(
        "--window",
        default=TimeWindow.SEVEN_DAYS.label,
        help=f"Lookback window, one of {', '.join(WINDOW_CHOICES)} (default: 7d)",
    )


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="llm-meter",
        description="Token usage and cost meter for LLM providers",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default=None,
        choices=list(LOG_FORMATS),
        help="Log output format (default: console)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the config and data directories")

    add = commands.add_parser("add-provider", help="Register a provider")
    add.add_argument("name")
    add.add_argument(
        "--api-key",
        dest="api_key",
        default=None,
        help="API key to store in the OS keyring",
    )
    add.add_argument("--base-url", dest="base_url", default=None)
    add.add_argument("--organization-id", dest="organization_id", default=None)

    remove = commands.add_parser("remove-provider", help="Forget a provider")
    remove.add_argument("name")
    remove.add_argument(
        "--keep-key",
        dest="keep_key",
        action="store_true",
        help="Leave the keyring entry in place",
    )

    test = commands.add_parser("test", help="Run a connection test")
    test.add_argument("name")

    enable = commands.add_parser(
        "enable", help="Test a provider and enable it when the test passes"
    )
    enable.add_argument("name")

    disable = commands.add_parser("disable", help="Disable a provider")
    disable.add_argument("name")

    commands.add_parser("providers", help="List configured providers")

    refresh = commands.add_parser("refresh", help="Run one refresh cycle")
    _add_window(refresh)
    refresh.add_argument(
        "--provider",
        dest="providers",
        action="append",
        default=None,
        help="Limit the refresh to this provider (repeatable)",
    )

    summary = commands.add_parser("summary", help="Show stored totals")
    _add_window(summary)

    export = commands.add_parser("export", help="Print stored cost rows")
    export.add_argument(
        "--format",
        dest="format",
        default="json",
        help="Output format, json or csv (default: json)",
    )

    watch = commands.add_parser(
        "watch", help="Refresh periodically and serve Prometheus metrics"
    )
    _add_window(watch)
    watch.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=None,
        help="Address to listen on (default: :9185)",
    )
    watch.add_argument(
        "--refresh.interval",
        dest="refresh_seconds",
        type=int,
        default=None,
        help="Refresh interval in seconds (default: from config, 60)",
    )

    return parser


def parse_args(
    argv: "list[str] | None" = None,
) -> "tuple[Config, argparse.Namespace]":
    """
    parses the command line into the base config and the
    subcommand arguments. Flags given on the command line win
    over the environment.
    """
    args = build_parser().parse_args(argv)
    config = Config.from_env()
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_format is not None:
        config.log_format = args.log_format
    if getattr(args, "listen_address", None):
        config.listen_address = args.listen_address
    return config, args
