"""Actionable error catalog for imagepatcher."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_option": {
        "what": "Missing required setting '{name}'.",
        "next": "Pass `--{option}`, export `{envvar}`, or add `{name}` to the config file.",
    },
    "secret_in_config": {
        "what": "Secret setting '{name}' must not be stored in a config file.",
        "next": "Remove it from the file and export `{envvar}` instead.",
    },
    "binfmt_missing": {
        "what": "No binfmt handler is registered for {arch} on this host.",
        "next": (
            "Register QEMU emulation once per host, e.g. "
            "`docker run --privileged --rm tonistiigi/binfmt --install {arch}`."
        ),
    },
    "host_busy": {
        "what": "Another patch run holds the host lock at {path}.",
        "next": "Wait for the other run to finish. Runs cannot share the staging registry port.",
    },
    "host_lock_unavailable": {
        "what": "Cannot open the host lock file {path}: {reason}.",
        "next": "Make the lock file writable for this user, or remove a stale one left by another user.",
    },
    "auth_expired": {
        "what": "Registry {host} rejected the credential.",
        "next": "Start a new run so the credential exchange is performed again.",
    },
    "image_not_found": {
        "what": "Image {image} was not found.",
        "next": "Check the repository, tag and platform, then retry.",
    },
    "patch_failed": {
        "what": "Patch tool exited with code {exit_code}.",
        "next": "Inspect the patcher container logs in the run manifest and retry.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
