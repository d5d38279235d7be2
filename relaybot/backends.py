from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from typing import Any, Callable

from google import genai
from google.genai import errors as genai_errors

from .errors import BackendError, FailureKind, failure_kind_for_status
from .runtime_log import summarize_text


GEMINI_CLI_EXECUTABLE = "gemini"


class GeminiBackend:
    """Gemini models through the google-genai async client."""

    name = "gemini"

    def __init__(self, api_key: str, *, client_factory: Callable[[str], Any] | None = None) -> None:
        self._api_key = (api_key or "").strip()
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))
        self._client: Any = None

    def configured(self) -> bool:
        return bool(self._api_key)

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(self._api_key)
        return self._client

    async def generate(self, model: str, prompt: str) -> str:
        client = self._ensure_client()
        try:
            response = await client.aio.models.generate_content(model=model, contents=prompt)
        except genai_errors.APIError as exc:
            status = getattr(exc, "code", None)
            detail = getattr(exc, "message", None) or str(exc)
            raise BackendError(
                failure_kind_for_status(status if isinstance(status, int) else None),
                summarize_text(str(detail)),
                candidate=f"{self.name}:{model}",
            ) from exc
        return getattr(response, "text", None) or ""


class GeminiCliBackend:
    """The `gemini` command line tool, one subprocess per request."""

    name = "gemini-cli"

    def __init__(self, executable: str = GEMINI_CLI_EXECUTABLE, *, env: dict[str, str] | None = None) -> None:
        self.executable = executable
        self._env = env

    def configured(self) -> bool:
        return True

    def installed(self) -> bool:
        return shutil.which(self.executable) is not None

    async def generate(self, model: str, prompt: str) -> str:
        cmd = [self.executable, "--output-format", "text"]
        if model and model != "default":
            cmd.extend(["--model", model])
        # Peer text stays positional even when it starts with `-`.
        cmd.extend(["--", prompt])
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        label = f"{self.name}:{model}"
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as exc:
            raise BackendError(FailureKind.NOT_FOUND, f"`{self.executable}` is not installed", candidate=label) from exc
        except PermissionError as exc:
            raise BackendError(FailureKind.FORBIDDEN, f"`{self.executable}` is not executable", candidate=label) from exc

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            with contextlib.suppress(Exception):
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()
            detail = detail or (stdout or b"").decode("utf-8", errors="replace").strip()
            raise BackendError(
                FailureKind.UNKNOWN,
                summarize_text(detail or f"exit={proc.returncode}"),
                candidate=label,
            )
        return (stdout or b"").decode("utf-8", errors="replace").strip()


def build_backends(api_key: str) -> dict[str, Any]:
    return {
        GeminiBackend.name: GeminiBackend(api_key),
        GeminiCliBackend.name: GeminiCliBackend(),
    }
