"""Tests for CLI argument parsing and validation."""

from __future__ import annotations

import argparse

import pytest

from scripts.cli import _validate_args, build_parser


def _parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


class TestParser:
    def test_enqueue(self) -> None:
        args = _parse_args(["enqueue", "a@x.com", "100"])
        assert args.command == "enqueue"
        assert args.email == "a@x.com"
        assert args.history_id == "100"

    def test_process_defaults(self) -> None:
        args = _parse_args(["process"])
        assert args.notification_id is None
        assert args.limit is None

    def test_process_single(self) -> None:
        args = _parse_args(["process", "--id", "abc", "--limit", "5"])
        assert args.notification_id == "abc"
        assert args.limit == 5

    def test_push_defaults_to_stdin(self) -> None:
        assert _parse_args(["push"]).path == "-"

    def test_add_user_with_cursor(self) -> None:
        args = _parse_args(["add-user", "u1", "a@x.com", "--cursor", "90"])
        assert (args.user_id, args.email, args.cursor) == ("u1", "a@x.com", "90")

    def test_reap_threshold(self) -> None:
        assert _parse_args(["reap", "--older-than", "30"]).older_than == 30.0
        assert _parse_args(["reap"]).older_than is None

    def test_list_emails_default_limit(self) -> None:
        assert _parse_args(["list-emails", "u1"]).limit == 20

    def test_non_integer_limit_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["process", "--limit", "abc"])


class TestValidation:
    def test_negative_limit_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _validate_args(_parse_args(["process", "--limit", "-1"]))
        assert exc_info.value.code == 1

    def test_non_positive_threshold_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _validate_args(_parse_args(["reap", "--older-than", "0"]))
        assert exc_info.value.code == 1

    def test_valid_args_pass(self) -> None:
        _validate_args(_parse_args(["process", "--limit", "0"]))
        _validate_args(_parse_args(["status"]))
