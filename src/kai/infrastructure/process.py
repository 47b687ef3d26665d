"""Async child-process helper shared by the CLI backends and provisioners."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import IO

from kai.errors import RuntimeOperationFailedError
from kai.infrastructure.logger import logger


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    argv: list[str],
    env: dict[str, str] | None = None,
    stdin: IO[bytes] | None = None,
    check: bool = True,
) -> CommandResult:
    """Run argv to completion and capture its output.

    With check=True a non-zero exit raises RuntimeOperationFailedError whose
    message is stderr followed by stdout.
    """
    logger.debug("Running command", argv=argv)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=stdin if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as err:
        raise RuntimeOperationFailedError(f"Failed to spawn {argv[0]}: {err}") from err

    out, err_out = await proc.communicate()
    result = CommandResult(
        returncode=proc.returncode or 0,
        stdout=out.decode(errors="replace"),
        stderr=err_out.decode(errors="replace"),
    )

    if check and not result.ok:
        message = "\n".join(part for part in (result.stderr.strip(), result.stdout.strip()) if part)
        raise RuntimeOperationFailedError(
            message or f"{argv[0]} exited with code {result.returncode}",
            {"argv": argv, "code": result.returncode},
        )
    return result
