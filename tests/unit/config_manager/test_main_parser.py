from pathlib import Path

import pytest

from telemetry_spool.config_manager import args_handler
from telemetry_spool.main import build_parser


def test_status_parses_config_flags() -> None:
    args = build_parser().parse_args(
        [
            "status",
            "--spool-dir",
            "/data/spool",
            "--max-batch-size",
            "512k",
            "--max-retention",
            "18h",
            "--max_concurrent_uploads",
            "3",
        ]
    )

    assert args.handler is args_handler.handle_status
    assert args.spool_dir == "/data/spool"
    assert args.max_batch_size_bytes == 512 * 1024
    assert args.max_retention_seconds == 18 * 3600.0
    assert args.max_concurrent_uploads == 3
    assert args.profile is None


def test_extract_config_updates_keeps_only_config_fields() -> None:
    args = build_parser().parse_args(
        ["launch", "--profile", "field", "--intake-url", "https://intake.test/"]
    )

    updates = args_handler._extract_config_updates(args)

    assert updates == {"intake_url": "https://intake.test/"}


def test_resolve_config_applies_cli_over_env(
    monkeypatch: pytest.MonkeyPatch, isolated_env: Path
) -> None:
    monkeypatch.setenv("TSPOOL_INTAKE_URL", "https://env.test/")
    args = build_parser().parse_args(
        ["status", "--intake-url", "https://cli.test/", "--state-db-path", "x.db"]
    )

    config = args_handler.resolve_config(args)

    assert config.intake_url == "https://cli.test/"
    assert config.state_db_path == Path("x.db")
    assert config.spool_dir == isolated_env / "spool"


def test_launch_rejects_unknown_consent() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["launch", "--consent", "maybe"])


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.parametrize(
    "argv, handler_name",
    [
        (["purge"], "handle_purge"),
        (["list-profiles"], "handle_list_profile"),
        (["profile", "create", "--name", "a"], "handle_profile_create"),
        (["profile", "show", "--name", "a"], "handle_profile_show"),
    ],
)
def test_subcommands_dispatch_to_handlers(argv: list[str], handler_name: str) -> None:
    args = build_parser().parse_args(argv)

    assert args.handler is getattr(args_handler, handler_name)
