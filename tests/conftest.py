import subprocess

import pytest
import requests


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None

    def exception(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeDocker:
    """Stands in for the `subprocess` module and answers docker/aws commands."""

    TimeoutExpired = subprocess.TimeoutExpired

    def __init__(self, platform="linux/arm64"):
        self.platform = platform
        self.calls = []
        self.inputs = []
        self.envs = []
        self.rules = []

    def on(self, *tokens, returncode=0, stdout="", stderr="", after=0, effect=None, raises=None):
        self.rules.append(
            {
                "tokens": tokens,
                "returncode": returncode,
                "stdout": stdout,
                "stderr": stderr,
                "after": after,
                "seen": 0,
                "effect": effect,
                "raises": raises,
            }
        )
        return self

    def run(self, cmd, text=True, capture_output=False, timeout=None, input=None, env=None):
        self.calls.append(list(cmd))
        self.inputs.append(input)
        self.envs.append(env)

        for rule in reversed(self.rules):
            if not all(token in cmd for token in rule["tokens"]):
                continue
            rule["seen"] += 1
            if rule["seen"] <= rule["after"]:
                continue
            if rule["effect"]:
                rule["effect"]()
            if rule["raises"]:
                raise rule["raises"]
            return subprocess.CompletedProcess(
                cmd, rule["returncode"], stdout=rule["stdout"], stderr=rule["stderr"]
            )

        return subprocess.CompletedProcess(cmd, 0, stdout=self._default_stdout(cmd), stderr="")

    def _default_stdout(self, cmd):
        if cmd[:3] == ["docker", "image", "inspect"]:
            return f"{self.platform}\n"
        if cmd[:3] == ["aws", "ecr", "get-login-password"]:
            return "ecr-login-token-0001\n"
        return ""

    def commands(self, *prefix):
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload or {}

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeRequests:
    RequestException = requests.RequestException

    def __init__(self, get_responses=None, post_responses=None):
        self.get_responses = list(get_responses or [FakeResponse(200)])
        self.post_responses = list(post_responses or [])
        self.gets = []
        self.posts = []

    def _next(self, responses):
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        return self._next(self.get_responses)

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self._next(self.post_responses)


@pytest.fixture
def logger():
    return DummyLogger()


@pytest.fixture
def console():
    return DummyConsole()


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_requests():
    return FakeRequests()
