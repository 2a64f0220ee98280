import asyncio
import logging
import re
from typing import Protocol

import aiohttp

from .models import ExecutionResult

logger = logging.getLogger(__name__)


class CodeSandbox(Protocol):
    async def execute(self, source_code: str, language_id: int, stdin: str) -> ExecutionResult:
        ...


class StubSandbox:
    """Used when no execution service is configured"""

    async def execute(self, source_code: str, language_id: int, stdin: str) -> ExecutionResult:
        return ExecutionResult(stdout=(
            "Execution service not configured.\n"
            f"Language: {language_id}\n"
            f"Input: {stdin}\n"
            f"Code length: {len(source_code or '')}"
        ))


class Judge0Sandbox:
    def __init__(self, base_url: str, api_key: str = "", timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-RapidAPI-Key"] = self.api_key
        if re.search(r"rapidapi\.com", self.base_url, re.IGNORECASE):
            headers["X-RapidAPI-Host"] = "judge0-ce.p.rapidapi.com"
        return headers

    async def execute(self, source_code: str, language_id: int, stdin: str) -> ExecutionResult:
        url = f"{self.base_url}/submissions?base64_encoded=false&wait=true"
        payload = {
            "source_code": source_code,
            "language_id": language_id,
            "stdin": stdin,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload, headers=self._headers()) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        return ExecutionResult(stderr=f"Execution error {resp.status}: {text}")
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("⚠️ Judge0 request failed: %r", e)
            return ExecutionResult(stderr=f"Execution failed: {e!r}")
        return ExecutionResult(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or data.get("compile_output") or "",
        )
