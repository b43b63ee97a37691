"""Tests for the package-level logger setup."""

from __future__ import annotations

import logging
from pathlib import Path

import fabric_erp


def test_resolve_log_dir_defaults_to_project_logs():
    """Without an override the logs live under ``.logs`` in the project."""

    assert fabric_erp.resolve_log_dir({}) == fabric_erp.PROJECT_ROOT / ".logs"
    assert fabric_erp.resolve_log_dir({fabric_erp.LOG_DIR_ENV: "  "}) == fabric_erp.PROJECT_ROOT / ".logs"


def test_resolve_log_dir_honours_environment(tmp_path: Path):
    """FABRIC_ERP_LOG_DIR moves the log directory."""

    assert fabric_erp.resolve_log_dir({fabric_erp.LOG_DIR_ENV: str(tmp_path)}) == tmp_path


def test_package_logger_is_configured_once():
    """The exported logger is the named package logger with a stderr handler."""

    assert fabric_erp.log is logging.getLogger("fabric_erp")
    assert any(isinstance(h, logging.StreamHandler) for h in fabric_erp.log.handlers)
    assert fabric_erp._configure_logging() is fabric_erp.log
