"""Deployment descriptor rendering for the published image."""

import json
import os
from importlib import resources
from string import Template
from typing import Any, Dict, Mapping, Optional

from imagepatcher.errors import ConfigurationError
from imagepatcher.redaction import SecretRedactor

DEFAULT_TEMPLATE = "task-definition.json"
REQUIRED_CAPABILITY = "SYS_PTRACE"


class DescriptorService:
    """Substitutes placeholders in a task definition template and checks the result."""

    def __init__(self, logger, redactor: Optional[SecretRedactor] = None):
        self.logger = logger
        self.redactor = redactor or SecretRedactor()

    def load_template(self, template_path: Optional[str] = None) -> str:
        if template_path:
            try:
                with open(template_path, "r", encoding="utf-8") as file_obj:
                    return file_obj.read()
            except OSError as exc:
                raise ConfigurationError(
                    f"Could not read descriptor template '{template_path}': {exc}"
                ) from exc
        return resources.files("imagepatcher").joinpath("templates", DEFAULT_TEMPLATE).read_text(
            encoding="utf-8"
        )

    def render(
        self,
        values: Mapping[str, str],
        template_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        text = self.load_template(template_path)
        try:
            rendered = Template(text).substitute(values)
        except KeyError as exc:
            raise ConfigurationError(f"Descriptor template placeholder has no value: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"Descriptor template is malformed: {exc}") from exc

        if self.redactor.redact(rendered) != rendered:
            raise ConfigurationError("Rendered descriptor would contain a secret value.")

        try:
            descriptor = json.loads(rendered)
        except ValueError as exc:
            raise ConfigurationError(f"Rendered descriptor is not valid JSON: {exc}") from exc

        self.validate(
            descriptor,
            image_uri=values.get("TARGET_IMAGE_URI", ""),
            cpu_architecture=values.get("CPU_ARCHITECTURE", ""),
        )
        return descriptor

    def validate(self, descriptor: Dict[str, Any], image_uri: str, cpu_architecture: str):
        containers = descriptor.get("containerDefinitions") or []
        if not any(container.get("image") == image_uri for container in containers):
            raise ConfigurationError(f"Descriptor does not reference the published image {image_uri}.")

        has_capability = any(
            REQUIRED_CAPABILITY
            in ((container.get("linuxParameters") or {}).get("capabilities") or {}).get("add", [])
            for container in containers
        )
        if not has_capability:
            raise ConfigurationError(f"Descriptor must add the {REQUIRED_CAPABILITY} capability.")

        architecture = (descriptor.get("runtimePlatform") or {}).get("cpuArchitecture")
        if architecture != cpu_architecture:
            raise ConfigurationError(
                f"Descriptor CPU architecture {architecture!r} does not match {cpu_architecture!r}."
            )

    def write(self, path: str, descriptor: Dict[str, Any]) -> str:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
            json.dump(descriptor, file_obj, indent=2)
            file_obj.write("\n")
        self.logger.info("Deployment descriptor written to %s", path)
        return path
