"""
Configuration for roster synchronisation runs.

Settings come from a YAML file with ``ROSTERSYNC_*`` environment variables
taking precedence. The GroupSpec table lives in its own YAML file and is
parsed into typed GroupSpec rows once, at load time.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from rostersync.errors import ConfigError, SetupError
from rostersync.models import AttributeKind, GroupSpec
from rostersync.roster.loader import DEFAULT_MEMBER_TYPES, EXCLUDED_UNIT_CODES, AggregateUnit
from rostersync.reconciliation.planner import PLACEHOLDER_UNITS

logger = logging.getLogger(__name__)

ENV_PREFIX = "ROSTERSYNC_"
TOKEN_ENV_VAR = "DIRECTORY_TOKEN"
SNAPSHOT_BACKENDS = ("file", "postgres")


@dataclass
class SyncConfig:
    """Settings of one synchronisation run."""

    domain: str = ""
    extract_dir: str = "extract"
    group_specs_path: str = "groups.yaml"
    extract_delimiter: str = ","

    dry_run: bool = False
    batch_size: int = 100
    batch_pause: float = 5.0
    call_delay: float = 0.1
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    max_attempts: int = 5
    suspend_grace_days: int = 30

    member_types: Tuple[str, ...] = DEFAULT_MEMBER_TYPES
    excluded_unit_codes: Tuple[int, ...] = EXCLUDED_UNIT_CODES
    excluded_org_ids: Tuple[str, ...] = ()
    placeholder_units: Tuple[str, ...] = tuple(sorted(PLACEHOLDER_UNITS))
    aggregate_units: List[Dict[str, Any]] = field(default_factory=list)

    snapshot_backend: str = "file"
    snapshot_path: str = ".rostersync/snapshot.json"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "rostersync"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    state_dir: str = ".rostersync"
    directory_base_url: str = "https://admin.googleapis.com/admin/directory/v1"
    vault_secret_path: str = "directory-credentials"
    pushgateway_url: Optional[str] = None

    @property
    def error_report_path(self) -> str:
        return str(Path(self.state_dir) / "error_report.json")

    @property
    def dry_run_report_path(self) -> str:
        return str(Path(self.state_dir) / "dry_run_report.json")

    @property
    def postgres_params(self) -> Dict[str, Any]:
        return {
            "host": self.postgres_host,
            "port": self.postgres_port,
            "database": self.postgres_db,
            "user": self.postgres_user,
            "password": self.postgres_password,
        }

    def aggregate_unit_specs(self) -> List[AggregateUnit]:
        units = []
        for row in self.aggregate_units:
            try:
                units.append(AggregateUnit(
                    template_id=str(row["template_id"]),
                    org_id=str(row["org_id"]),
                    name=str(row["name"]),
                    unit=str(row["unit"]),
                    member_types=tuple(row.get("member_types") or ()),
                ))
            except KeyError as e:
                raise ConfigError(f"Aggregate unit {row} is missing {e}")
        return units

    @classmethod
    def from_file(cls, path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> "SyncConfig":
        """
        Load settings from a YAML file and the environment.

        Args:
            path: YAML settings file (optional)
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ConfigError: If the file is unreadable or values are invalid
        """
        values: Dict[str, Any] = {}

        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {path}")
            with open(config_path, "r") as f:
                try:
                    loaded = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigError(f"Invalid YAML in {path}: {e}")
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {path} must contain a mapping")
            values.update(loaded)

        environ = os.environ if environ is None else environ
        known = {f.name: f for f in fields(cls)}
        for name in known:
            env_name = f"{ENV_PREFIX}{name.upper()}"
            if env_name in environ:
                values[name] = environ[env_name]

        unknown = set(values) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")

        config = cls()
        for name, raw in values.items():
            if name in known:
                setattr(config, name, cls._coerce(name, raw, getattr(config, name)))

        config.validate()
        return config

    @staticmethod
    def _coerce(name: str, raw: Any, default: Any) -> Any:
        try:
            if isinstance(default, bool):
                if isinstance(raw, bool):
                    return raw
                return str(raw).strip().lower() in ("1", "true", "yes", "on")
            if isinstance(default, int):
                return int(raw)
            if isinstance(default, float):
                return float(raw)
            if isinstance(default, tuple):
                items = raw if isinstance(raw, (list, tuple)) else str(raw).split(",")
                items = [str(item).strip() for item in items if str(item).strip()]
                if default and isinstance(default[0], int):
                    return tuple(int(item) for item in items)
                return tuple(items)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}: {raw!r} ({e})")
        return raw

    def validate(self) -> None:
        """
        Check settings for consistency.

        Raises:
            ConfigError: On the first invalid setting
        """
        if not self.domain:
            raise ConfigError("domain must be configured")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.backoff_factor < 1 or self.backoff_base < 0:
            raise ConfigError("backoff_base must be >= 0 and backoff_factor >= 1")
        if self.call_delay < 0 or self.batch_pause < 0:
            raise ConfigError("call_delay and batch_pause must not be negative")
        if self.suspend_grace_days < 0:
            raise ConfigError("suspend_grace_days must not be negative")
        if self.snapshot_backend not in SNAPSHOT_BACKENDS:
            raise ConfigError(f"snapshot_backend must be one of {SNAPSHOT_BACKENDS}")
        self.aggregate_unit_specs()


def load_group_specs(path: str) -> List[GroupSpec]:
    """
    Parse the GroupSpec table.

    The file holds a list of rows (or a mapping with a ``groups`` list), each
    with ``name``, ``attribute``, ``values`` and ``description``. Rows without a
    name are skipped; unknown attributes are kept as UNSUPPORTED.

    Raises:
        ConfigError: If the file is missing or not a list of rows
    """
    spec_path = Path(path)
    if not spec_path.exists():
        raise ConfigError(f"Group spec file not found: {path}")

    with open(spec_path, "r") as f:
        try:
            document = yaml.safe_load(f) or []
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

    rows = document.get("groups", []) if isinstance(document, dict) else document
    if not isinstance(rows, list):
        raise ConfigError(f"Group spec file {path} must contain a list of rows")

    specs = []
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            logger.warning(f"Skipping group spec row {index}: not a mapping")
            continue
        try:
            spec = GroupSpec.from_row(row)
        except ValueError as e:
            logger.warning(f"Skipping group spec row {index}: {e}")
            continue
        if spec.attribute == AttributeKind.UNSUPPORTED:
            logger.warning(f"Group spec {spec.name} uses unsupported attribute {spec.raw_attribute!r}")
        specs.append(spec)

    logger.info(f"Loaded {len(specs)} group specs from {path}")
    return specs


def resolve_access_token(config: SyncConfig, environ: Optional[Dict[str, str]] = None, vault_factory=None) -> str:
    """
    Find the directory access token.

    The ``DIRECTORY_TOKEN`` environment variable wins; otherwise the token is
    read from Vault under ``config.vault_secret_path``.

    Raises:
        SetupError: If no token can be obtained
    """
    environ = os.environ if environ is None else environ
    token = environ.get(TOKEN_ENV_VAR)
    if token:
        return token

    if vault_factory is None:
        from rostersync.utils.vault_client import VaultClient
        vault_factory = VaultClient

    try:
        with vault_factory() as vault:
            secret = vault.get_directory_credentials(config.vault_secret_path)
    except Exception as e:
        raise SetupError(f"No directory credentials: {TOKEN_ENV_VAR} unset and Vault lookup failed: {e}")

    token = secret.get("access_token")
    if not token:
        raise SetupError(f"Vault secret {config.vault_secret_path} has no access_token")
    return token
