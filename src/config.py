# Copyright (c) 2025 Stephen Clau

# This file is part of Factorio Panel.

# Factorio Panel is dual-licensed:

# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms

# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com

# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Configuration module for Factorio Panel.

Sources, highest priority first:
- Docker/Kubernetes secrets at /run/secrets/* (passwords and tokens)
- Environment variables
- Optional panel.yml in CONFIG_DIR (supports ${VAR} expansion)
- Defaults
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any
import os
import re
import yaml
import structlog

logger = structlog.get_logger()


def _read_docker_secret(secret_name: str) -> Optional[str]:
    """
    Read a secret from Docker secrets location.

    Kubernetes/Swarm mount secrets at /run/secrets/{secret_name}.

    Args:
        secret_name: Name of the secret (e.g., 'rcon_password')

    Returns:
        Secret value or None if not found
    """
    secret_path = Path(f"/run/secrets/{secret_name}")

    if secret_path.exists():
        try:
            return secret_path.read_text().strip()
        except (IOError, OSError) as e:
            logger.warning("docker_secret_read_error", secret=secret_name, error=str(e))
            return None

    return None


def get_config_value(
    env_var: str,
    secret_name: Optional[str] = None,
    required: bool = False,
    default: Optional[str] = None,
    file_values: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """
    Get configuration value from secrets, environment, panel.yml or default.

    Tries in order:
    1. Docker secret file at /run/secrets/{secret_name} (only if secret_name given)
    2. Environment variable {env_var}
    3. panel.yml entry keyed by env_var lowercased
    4. Default value if provided
    5. Raise error if required and not found

    Example usage:
        rcon_password = get_config_value(
            env_var="RCON_PASSWORD",
            secret_name="rcon_password",
            required=True,
        )

    Args:
        env_var: Environment variable name (e.g., 'RCON_PASSWORD')
        secret_name: Docker secret name (e.g., 'rcon_password')
        required: If True, raises ValueError when value not found
        default: Default value if not found anywhere else
        file_values: Parsed panel.yml mapping

    Returns:
        Configuration value as a string

    Raises:
        ValueError: If required=True and value not found
    """
    if secret_name is not None:
        secret_value = _read_docker_secret(secret_name)
        if secret_value is not None:
            logger.debug("config_value_loaded_from_secret", source="docker_secret", var=env_var)
            return secret_value

    env_value = os.getenv(env_var)
    if env_value is not None:
        logger.debug("config_value_loaded_from_env", source="environment", var=env_var)
        return env_value

    if file_values:
        file_value = file_values.get(env_var.lower())
        if file_value is not None:
            logger.debug("config_value_loaded_from_file", source="panel_yml", var=env_var)
            return _expand_env_vars(str(file_value))

    if default is not None:
        logger.debug("config_value_loaded_from_default", source="default", var=env_var)
        return default

    if required:
        checked = f"environment variable '{env_var}', panel.yml key '{env_var.lower()}'"
        if secret_name is not None:
            checked = f"Docker secret '{secret_name}', {checked}"
        raise ValueError(
            f"Required configuration value not found for '{env_var}'. Checked: {checked}"
        )

    return None


def _safe_int(value: Any, field_name: str, default: int) -> int:
    """
    Safely convert value to int with proper type checking.

    Raises:
        ValueError: If conversion fails
    """
    if value is None:
        return default

    if isinstance(value, int):
        return value

    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {field_name}: {value}")

    raise ValueError(f"Cannot convert {field_name} to int: {type(value).__name__}")


def _safe_float(value: Any, field_name: str, default: float) -> float:
    """
    Safely convert value to float with proper type checking.

    Raises:
        ValueError: If conversion fails
    """
    if value is None:
        return default

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {field_name}: {value}")

    raise ValueError(f"Cannot convert {field_name} to float: {type(value).__name__}")


def _expand_env_vars(value: str) -> str:
    """
    Expand ${VAR_NAME} references in a string.

    Unknown variables are left as-is.
    """
    if not isinstance(value, str):
        return value

    def replace_var(match: Any) -> str:
        var_name = match.group(1)
        return os.getenv(var_name, match.group(0))

    return re.sub(r"\$\{([^}]+)\}", replace_var, value)


@dataclass
class Config:
    """Main application configuration."""

    rcon_password: str
    """RCON password (required)."""

    rcon_host: str = "localhost"
    """RCON host address."""

    rcon_port: int = 27015
    """RCON port."""

    rcon_timeout: float = 10.0
    """RCON socket timeout in seconds."""

    saves_path: Path = field(default_factory=lambda: Path("/factorio/saves"))
    """Saves volume, mounted at the same path here and in the server pod."""

    script_output_path: Path = field(default_factory=lambda: Path("/factorio/script-output"))
    """Factorio script-output directory (screenshots land here)."""

    factorio_binary: str = "/opt/factorio/bin/x64/factorio"
    """Factorio binary inside the server pod."""

    factorio_data_path: str = "/opt/factorio/data"
    """Factorio read-data directory inside the server pod."""

    preview_size: int = 256
    """Map preview edge length in pixels."""

    exec_timeout: float = 30.0
    """Hard timeout for pod exec (preview rendering) in seconds."""

    k8s_namespace: str = "factorio"
    """Namespace of the Factorio server pod."""

    pod_label: str = "app=factorio-factorio-server-charts"
    """Label selector identifying the Factorio server pod."""

    k8s_api_url: str = "https://kubernetes.default.svc"
    """Kubernetes API server URL."""

    s3_endpoint: Optional[str] = None
    """S3 endpoint for backups (None for AWS)."""

    s3_bucket: str = "factorio-backups"
    """Bucket holding save backups."""

    s3_region: str = "us-east-1"
    """S3 signing region."""

    s3_access_key: Optional[str] = None
    """S3 access key id (None uses the default AWS credential chain)."""

    s3_secret_key: Optional[str] = None
    """S3 secret access key."""

    api_token: Optional[str] = None
    """Bearer token required on /api routes. None disables the check."""

    http_host: str = "0.0.0.0"
    """Host to bind the HTTP server to."""

    http_port: int = 8080
    """Port to bind the HTTP server to."""

    log_level: str = "info"
    """Logging level: debug, info, warning, error, critical."""

    log_format: str = "console"
    """Logging format: console or json."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not isinstance(self.saves_path, Path):
            self.saves_path = Path(self.saves_path)
        if not isinstance(self.script_output_path, Path):
            self.script_output_path = Path(self.script_output_path)

        if not self.rcon_password:
            raise ValueError("rcon_password is REQUIRED")

        if not 1 <= self.rcon_port <= 65535:
            raise ValueError(f"Invalid rcon_port: {self.rcon_port}. Must be 1-65535")

        if not 1 <= self.http_port <= 65535:
            raise ValueError(f"Invalid http_port: {self.http_port}. Must be 1-65535")

        if self.rcon_timeout <= 0:
            raise ValueError(f"rcon_timeout must be > 0, got {self.rcon_timeout}")

        if self.exec_timeout <= 0:
            raise ValueError(f"exec_timeout must be > 0, got {self.exec_timeout}")

        if not self.s3_bucket:
            raise ValueError("s3_bucket must not be empty")

        if not 16 <= self.preview_size <= 4096:
            raise ValueError(f"preview_size must be 16-4096, got {self.preview_size}")

        valid_levels = {"debug", "info", "warning", "error", "critical"}
        if self.log_level.lower() not in valid_levels:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. Must be one of: {', '.join(sorted(valid_levels))}"
            )

        valid_formats = {"console", "json"}
        if self.log_format.lower() not in valid_formats:
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. Must be one of: {', '.join(sorted(valid_formats))}"
            )


def _load_panel_yml(config_dir: Path) -> Dict[str, Any]:
    """Load optional panel.yml. Missing file means no file-level settings."""
    panel_yml_path = config_dir / "panel.yml"
    if not panel_yml_path.exists():
        return {}

    with open(panel_yml_path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{panel_yml_path} must contain a mapping, got {type(data).__name__}")

    logger.debug("panel_yml_loaded", path=str(panel_yml_path), keys=sorted(data.keys()))
    return {str(k).lower(): v for k, v in data.items()}


def load_config() -> Config:
    """
    Load configuration from secrets, environment variables and panel.yml.

    Returns:
        Fully populated and validated Config

    Raises:
        ValueError: If required values are missing or invalid
        yaml.YAMLError: If panel.yml is invalid YAML
    """
    config_dir = Path(os.getenv("CONFIG_DIR", "."))
    file_values = _load_panel_yml(config_dir)

    def value(env_var: str, default: Optional[str] = None, secret_name: Optional[str] = None,
              required: bool = False) -> Optional[str]:
        return get_config_value(
            env_var=env_var,
            secret_name=secret_name,
            required=required,
            default=default,
            file_values=file_values,
        )

    rcon_password = value("RCON_PASSWORD", secret_name="rcon_password", required=True)

    config = Config(
        rcon_password=rcon_password or "",
        rcon_host=value("RCON_HOST", default="localhost") or "localhost",
        rcon_port=_safe_int(value("RCON_PORT"), "rcon_port", 27015),
        rcon_timeout=_safe_float(value("RCON_TIMEOUT"), "rcon_timeout", 10.0),
        saves_path=Path(value("FACTORIO_SAVES_PATH", default="/factorio/saves") or "/factorio/saves"),
        script_output_path=Path(
            value("FACTORIO_SCRIPT_OUTPUT_PATH", default="/factorio/script-output")
            or "/factorio/script-output"
        ),
        factorio_binary=value("FACTORIO_BINARY", default="/opt/factorio/bin/x64/factorio")
        or "/opt/factorio/bin/x64/factorio",
        factorio_data_path=value("FACTORIO_DATA_PATH", default="/opt/factorio/data")
        or "/opt/factorio/data",
        preview_size=_safe_int(value("PREVIEW_SIZE"), "preview_size", 256),
        exec_timeout=_safe_float(value("EXEC_TIMEOUT"), "exec_timeout", 30.0),
        k8s_namespace=value("K8S_NAMESPACE", default="factorio") or "factorio",
        pod_label=value("FACTORIO_POD_LABEL", default="app=factorio-factorio-server-charts")
        or "app=factorio-factorio-server-charts",
        k8s_api_url=value("K8S_API_URL", default="https://kubernetes.default.svc")
        or "https://kubernetes.default.svc",
        s3_endpoint=value("S3_ENDPOINT") or None,
        s3_bucket=value("S3_BUCKET", default="factorio-backups") or "factorio-backups",
        s3_region=value("S3_REGION", default="us-east-1") or "us-east-1",
        s3_access_key=value("S3_ACCESS_KEY", secret_name="s3_access_key") or None,
        s3_secret_key=value("S3_SECRET_KEY", secret_name="s3_secret_key") or None,
        api_token=value("API_TOKEN", secret_name="api_token") or None,
        http_host=value("HTTP_HOST", default="0.0.0.0") or "0.0.0.0",
        http_port=_safe_int(value("HTTP_PORT"), "http_port", 8080),
        log_level=value("LOG_LEVEL", default="info") or "info",
        log_format=value("LOG_FORMAT", default="console") or "console",
    )

    if config.api_token is None:
        logger.warning("api_token_not_configured", message="/api routes are unauthenticated")

    return config
