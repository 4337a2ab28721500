"""
Target Dispatcher - resolves a step's target and invokes the brick there.

Targets:
- self: run in-process
- opener / target: exactly one related frame, else NoRelatedFrameError
- top: the root frame of the current surface
- broadcast: every frame on every surface (fan-out)
- all_frames: every frame on the current surface (fan-out)
- remote: one privileged destination, only for allow-listed bricks

Fan-out invokes all destinations concurrently and waits for every one of
them. The result is a list with one entry per destination, in destination
order: the destination's value, or its serialized error. The step succeeds if
at least one destination succeeded. If all failed, the first destination's
error is raised.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from brickflow.errors import (
    AbortedError,
    BrickflowError,
    BusinessError,
    NoRelatedFrameError,
    RemoteOperationNotAllowedError,
    TimeoutDestinationError,
    serialize_error,
)
from brickflow.frames import Destination, FrameRegistry
from brickflow.schemas import TargetKind
from brickflow.transport import Transport

logger = logging.getLogger(__name__)

# Bricks allowed to run on the privileged remote destination
DEFAULT_REMOTE_ALLOWLIST = frozenset({"@brickflow/identity"})


def is_aborted(abort_signal: Any) -> bool:
    """Check an abort signal (anything with is_set(), or None)."""
    return abort_signal is not None and abort_signal.is_set()


class TargetDispatcher:
    """
    Resolves targets to destinations and invokes bricks on them.

    Usage:
        dispatcher = TargetDispatcher(frames, transport)
        destinations = dispatcher.resolve(TargetKind.BROADCAST, "@acme/read")
        result = await dispatcher.invoke(TargetKind.BROADCAST, destinations, payload, local)
    """

    def __init__(
        self,
        frames: FrameRegistry,
        transport: Optional[Transport] = None,
        remote_allowlist: Optional[Iterable[str]] = None,
    ):
        self.frames = frames
        self.transport = transport
        self.remote_allowlist = frozenset(
            DEFAULT_REMOTE_ALLOWLIST if remote_allowlist is None else remote_allowlist
        )

    def resolve(self, target: TargetKind, brick_id: str) -> list[Destination]:
        """
        Resolve a target to destinations.

        Single-destination targets return exactly one destination. Fan-out
        targets return every match, possibly none.

        Raises:
            RemoteOperationNotAllowedError: Remote target for a brick outside the allow-list
            NoRelatedFrameError: No opener/target/top frame
            BusinessError: No remote destination, or an ambiguous single target
        """
        if target == TargetKind.REMOTE and brick_id not in self.remote_allowlist:
            raise RemoteOperationNotAllowedError(brick_id)

        if target == TargetKind.SELF:
            return [self.frames.current]

        destinations = self.frames.resolve_target(target)
        if target.is_fan_out:
            return destinations

        if not destinations:
            if target == TargetKind.REMOTE:
                raise BusinessError("No remote destination is configured")
            raise NoRelatedFrameError(target.value)
        if len(destinations) > 1:
            raise BusinessError(
                f"Target '{target.value}' resolved to {len(destinations)} frames, expected exactly one"
            )
        return destinations

    async def invoke(
        self,
        target: TargetKind,
        destinations: list[Destination],
        payload: dict[str, Any],
        local: Callable[[], Awaitable[Any]],
        abort_signal: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Invoke a brick on resolved destinations.

        Args:
            target: The step's target
            destinations: From resolve()
            payload: RUN_BRICK message for remote destinations
            local: Runs the brick in-process (target self)
            abort_signal: Checked before each fan-out destination call
            timeout: Fan-out only. Destinations that have not settled are
                recorded as TimeoutDestinationError entries

        Returns:
            The brick's output, or the aggregated list for fan-out targets

        Raises:
            AbortedError: The abort signal was set during a fan-out
        """
        if target == TargetKind.SELF:
            return await local()
        if target.is_fan_out:
            return await self._fan_out(destinations, payload, abort_signal, timeout)
        return await self._send(destinations[0], payload)

    async def _send(self, destination: Destination, payload: dict[str, Any]) -> Any:
        if self.transport is None:
            raise BrickflowError(f"No transport configured to reach frame {destination}")
        return await self.transport.send(destination, payload)

    async def _fan_out(
        self,
        destinations: list[Destination],
        payload: dict[str, Any],
        abort_signal: Any,
        timeout: Optional[float],
    ) -> list[Any]:
        if not destinations:
            logger.debug("Fan-out target matched no frames")
            return []

        async def call(destination: Destination) -> Any:
            if is_aborted(abort_signal):
                raise AbortedError()
            return await self._send(destination, payload)

        tasks = [asyncio.ensure_future(call(d)) for d in destinations]
        try:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        finally:
            # Also runs when the run itself is cancelled while waiting
            unsettled = [task for task in tasks if not task.done()]
            for task in unsettled:
                task.cancel()
            if unsettled:
                await asyncio.gather(*unsettled, return_exceptions=True)

        if is_aborted(abort_signal):
            # Results of calls already issued are discarded
            raise AbortedError()

        entries: list[Any] = []
        errors: list[BaseException] = []
        for destination, task in zip(destinations, tasks):
            if task in pending:
                error: Optional[BaseException] = TimeoutDestinationError(str(destination), timeout or 0.0)
            else:
                error = task.exception()
            if error is None:
                entries.append(task.result())
            else:
                logger.debug(f"Destination {destination} failed: {error}")
                errors.append(error)
                entries.append(serialize_error(error))

        if len(errors) == len(destinations):
            raise errors[0]
        return entries
