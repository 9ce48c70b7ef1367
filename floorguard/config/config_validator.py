"""
Configuration validation for production safety.

- Required field checks
- Range checks for numeric parameters
- Dependency validation (e.g. live buybacks need a signer endpoint)
- Warnings for risky configurations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

from floorguard.config.config import FULLNODE_URLS

logger = logging.getLogger("floorguard")


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()     # Informational only


@dataclass
class ValidationIssue:
    """A single validation issue."""
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    """Result of config validation."""
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings before the service starts.

    Checks:
    - Required fields are present
    - Numeric values are within safe ranges
    - Live execution has everything it needs
    - Risky but legal combinations
    """

    # Range definitions: (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "listener_poll_interval_ms": (500, 600_000),
        "listener_event_limit": (1, 1000),
        "buyback_price_multiplier": (1.0, 10.0),
        "order_cache_max_age_ms": (60_000, 30 * 24 * 60 * 60 * 1000),
        "http_timeout": (1.0, 120.0),
        "metrics_port": (0, 65535),
    }

    REQUIRED_STRINGS: List[str] = [
        "network",
        "rpc_url",
        "deepbook_package_id",
        "quote_coin_type",
    ]

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        """Register a custom validation function."""
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required_strings(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_execution(cfg))
        issues.extend(self._check_risky_configs(cfg))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(cfg)
                if custom_issues:
                    issues.extend(custom_issues)
            except Exception as e:
                logger.warning(f"Custom validator error: {e}")

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_required_strings(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.REQUIRED_STRINGS:
            value = getattr(cfg, field_name, None)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required field '{field_name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_execution(self, cfg) -> List[ValidationIssue]:
        """Live buybacks need a credential and somewhere to sign."""
        issues = []
        if not getattr(cfg, "buyback_enabled", False):
            return issues

        if not getattr(cfg, "private_key", None):
            issues.append(ValidationIssue(
                field="private_key",
                message="Buyback enabled without a signing credential; triggers will be rejected",
                severity=ValidationSeverity.WARNING,
                suggestion="Set EXECUTOR_PRIVATE_KEY or SUI_PRIVATE_KEY",
            ))

        if not getattr(cfg, "buyback_dry_run", False) and not getattr(cfg, "signer_url", None):
            issues.append(ValidationIssue(
                field="signer_url",
                message="Live buyback requires an external signer endpoint",
                severity=ValidationSeverity.ERROR,
                suggestion="Set SIGNER_URL or BUYBACK_DRY_RUN=true",
            ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        network = getattr(cfg, "network", "testnet")
        if network not in FULLNODE_URLS:
            issues.append(ValidationIssue(
                field="network",
                message=f"Unknown network '{network}'",
                severity=ValidationSeverity.WARNING,
                value=network,
                suggestion=f"Use one of {sorted(FULLNODE_URLS)}",
            ))

        if network == "mainnet" and getattr(cfg, "buyback_enabled", False):
            issues.append(ValidationIssue(
                field="network",
                message="Buyback execution enabled on mainnet - collateral will be spent",
                severity=ValidationSeverity.WARNING,
                value=network,
            ))

        if getattr(cfg, "buyback_enabled", False) and not getattr(cfg, "buyback_min_amount", None):
            issues.append(ValidationIssue(
                field="buyback_min_amount",
                message="No global minimum buyback amount; tiny triggers will be executed",
                severity=ValidationSeverity.WARNING,
                suggestion="Set BUYBACK_MIN_AMOUNT",
            ))

        if getattr(cfg, "buyback_dry_run", False):
            issues.append(ValidationIssue(
                field="buyback_dry_run",
                message="Dry run: buybacks are simulated and never submitted",
                severity=ValidationSeverity.INFO,
            ))

        return issues


def validate_config(cfg) -> ValidationResult:
    """Convenience function to validate config."""
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")

    return result.valid
