"""Configuration loader for imagepatcher."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from imagepatcher.errors import ConfigurationError
from imagepatcher.errors_catalog import actionable_error


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "region",
        "account_id",
        "source_repo",
        "source_tag",
        "target_repo",
        "target_tag",
        "patcher_image",
        "platform",
        "pull_policy",
        "cloud_service",
        "falcon_client_id",
        "falcon_cloud",
        "use_instance_role",
        "verbose",
        "log_file",
        "output_dir",
        "step_timeout_minutes",
        "retry_count",
        "retry_backoff_seconds",
        "render_descriptor",
        "descriptor_template",
        "dry_run",
    }
    SECRET_KEYS = {
        "cid": "FALCON_CID",
        "falcon_client_secret": "FALCON_CLIENT_SECRET",
        "aws_access_key_id": "AWS_ACCESS_KEY_ID",
        "aws_secret_access_key": "AWS_SECRET_ACCESS_KEY",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Config file must contain a YAML mapping at the root.")

        leaked = sorted(set(parsed.keys()) & set(self.SECRET_KEYS))
        if leaked:
            key = leaked[0]
            raise ConfigurationError(
                actionable_error("secret_in_config", name=key, envvar=self.SECRET_KEYS[key])
            )

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigurationError(f"Unknown configuration keys: {unknown_list}")

        return parsed
