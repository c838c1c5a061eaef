"""
Drone command relay.

Sends SDK text commands to the drone over UDP, correlates the drone's
unlabeled replies with the command that produced them, and turns
telemetry replies into TelemetrySnapshot updates broadcast to viewers.

Correlation strategy: every command the drone answers goes through one
exchange lock, so at most one reply is outstanding at a time and polls are
strictly serialized with user commands. A reply only completes the pending
exchange when its shape fits the command (a value for a read-command, "ok" or
"error" for anything else); a late reply of the wrong shape is treated as
stray. Units in the reply ("s", "dm", "mm", "cm/s", "%") take precedence
over position.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from drone_relay.config import DRONE_CONFIG, TELEMETRY_CONFIG
from drone_relay.constants import (
    ACK_ERROR, ACK_OK, DRONE_STATE_MESSAGE, EMERGENCY_COMMAND, MAX_COMMAND_LENGTH,
    NO_REPLY_COMMANDS, READ_COMMAND_FIELDS, SDK_MODE_COMMAND, STREAM_OFF_COMMAND,
    STREAM_ON_COMMAND, TELEMETRY_UNIT_FIELDS
)
from drone_relay.services.connection_state import ConnectionStateStore
from drone_relay.services.errors import CommandSendError, CommandTimeout, InvalidCommand
from drone_relay.services.viewer_registry import ViewerRegistry

logger = logging.getLogger(__name__)

StreamHook = Callable[[], Awaitable[Any]]

_NUMERIC_REPLY = re.compile(r"^(-?\d+(?:\.\d+)?)\s*([a-zA-Z/%]*)$")


@dataclass
class CommandResult:
    """Outcome of one relayed command."""
    command: str
    response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command, "response": self.response}


@dataclass
class _PendingReply:
    command: str
    future: asyncio.Future


class DroneCommandProtocol(asyncio.DatagramProtocol):
    """Datagram endpoint forwarding socket events to the relay."""

    def __init__(self, relay: "CommandRelay"):
        self.relay = relay

    def datagram_received(self, data: bytes, addr) -> None:
        self.relay.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.relay.handle_transport_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.warning("Commands | event=socket_lost | error=%s", exc)


def is_read_command(command: str) -> bool:
    return command.endswith("?")


def is_ack(reply: str) -> bool:
    return reply.lower() in (ACK_OK, ACK_ERROR)


def expects_reply(command: str) -> bool:
    return command.split(" ", 1)[0] not in NO_REPLY_COMMANDS


def reply_fits(command: str, reply: str) -> bool:
    """Whether a reply has the shape the pending command produces."""
    return is_ack(reply) != is_read_command(command)


class CommandRelay:
    """UDP command channel, reply correlation and telemetry polling."""

    def __init__(
        self,
        state: ConnectionStateStore,
        registry: ViewerRegistry,
        config: Optional[Dict[str, Any]] = None,
        telemetry_config: Optional[Dict[str, Any]] = None,
        on_stream_on: Optional[StreamHook] = None,
        on_stream_off: Optional[StreamHook] = None,
    ):
        self.state = state
        self.registry = registry
        self.config = config or DRONE_CONFIG
        self.telemetry_config = telemetry_config or TELEMETRY_CONFIG
        self.on_stream_on = on_stream_on
        self.on_stream_off = on_stream_off

        self.transport: Optional[asyncio.DatagramTransport] = None
        self._pending: Optional[_PendingReply] = None
        self._exchange_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

        self.commands_sent = 0
        self.replies_received = 0
        self.missed_polls = 0
        self.stray_replies = 0

    @property
    def drone_address(self) -> Tuple[str, int]:
        return self.config["ip"], self.config["command_port"]

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def open(self) -> None:
        """Bind the local command socket."""
        if self.transport is not None:
            return
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: DroneCommandProtocol(self),
            local_addr=("0.0.0.0", self.config.get("local_command_port", 0)),
        )
        self.transport = transport
        logger.info("Commands | event=socket_open | drone=%s:%s", *self.drone_address)

    async def close(self) -> None:
        await self.stop_polling()
        if self.transport is not None:
            self.transport.close()
            self.transport = None
        logger.info("Commands | event=socket_closed")

    # Sending

    @staticmethod
    def validate(command: str) -> str:
        command = (command or "").strip()
        if not command or len(command) > MAX_COMMAND_LENGTH:
            raise InvalidCommand()
        if not (command.isascii() and command.isprintable()):
            raise InvalidCommand()
        return command

    def _transmit(self, command: str) -> None:
        if self.transport is None:
            raise CommandSendError("Command socket is not open")
        try:
            self.transport.sendto(command.encode("ascii"), self.drone_address)
        except (OSError, UnicodeEncodeError) as e:
            logger.error("Commands | event=send_failed | command=%s | error=%s", command, e)
            raise CommandSendError() from e
        self.state.set_last_command(command)
        self.commands_sent += 1
        logger.debug("Commands | event=sent | command=%s", command)

    async def exchange(self, command: str, timeout: float) -> Optional[str]:
        """
        Send a command and wait for its reply.

        Returns:
            The reply text, or None if nothing arrived within ``timeout``
        """
        async with self._exchange_lock:
            future = asyncio.get_running_loop().create_future()
            self._pending = _PendingReply(command=command, future=future)
            try:
                self._transmit(command)
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug("Commands | event=reply_timeout | command=%s", command)
                return None
            finally:
                self._pending = None

    async def send(self, command: str) -> CommandResult:
        """
        Relay one command, applying its side effects.

        Commands the drone answers wait for their reply under the exchange
        lock, up to the acknowledgment timeout; a missing reply leaves
        ``response`` empty. Stick commands are sent without waiting.

        Raises:
            InvalidCommand: malformed command token
            CommandSendError: the datagram could not be sent
            CommandTimeout: SDK mode entry was not acknowledged
        """
        command = self.validate(command)
        ack_timeout = self.config.get("command_ack_timeout_seconds", 5.0)

        if command == SDK_MODE_COMMAND:
            reply = await self.exchange(command, ack_timeout)
            if reply is None:
                self.state.set_drone_connection(False)
                raise CommandTimeout()
            if reply.lower() == ACK_OK:
                self.state.set_drone_connection(True)
                self.start_polling()
            elif reply.lower() == ACK_ERROR:
                logger.warning("Commands | event=sdk_mode_refused")
                self.state.set_drone_connection(False)
            return CommandResult(command, reply)

        if command == STREAM_ON_COMMAND:
            reply = await self.exchange(command, self.config.get("streamon_ack_timeout_seconds", 1.0))
            if self.on_stream_on is not None:
                await self.on_stream_on()
            return CommandResult(command, reply)

        if command == STREAM_OFF_COMMAND:
            reply = await self.exchange(command, self.config.get("streamoff_ack_timeout_seconds", 1.0))
            if self.on_stream_off is not None:
                await self.on_stream_off()
            return CommandResult(command, reply)

        if not expects_reply(command):
            self._transmit(command)
            return CommandResult(command)

        return CommandResult(command, await self.exchange(command, ack_timeout))

    def send_emergency(self) -> bool:
        """Best-effort motor stop used during shutdown."""
        try:
            self._transmit(EMERGENCY_COMMAND)
            return True
        except CommandSendError as e:
            logger.warning("Commands | event=emergency_failed | error=%s", e)
            return False

    # Receiving

    def handle_datagram(self, data: bytes, addr=None) -> Optional[Tuple[str, Any]]:
        """
        Process one inbound reply.

        Returns:
            The (field, value) telemetry update the reply produced, if any
        """
        try:
            text = data.decode("utf-8", errors="replace").strip()
            if not text:
                return None
            self.replies_received += 1

            command = self._resolve_pending(text)
            logger.debug("Commands | event=reply | command=%s | reply=%s", command, text)

            update = self.classify(text, command)
            if update is not None:
                self.registry.broadcast_json(self.build_state_message())
            return update
        except Exception as e:
            logger.error("Commands | event=reply_error | error=%s", e)
            return None

    def _resolve_pending(self, text: str) -> Optional[str]:
        """Complete the pending exchange and return the command the reply belongs to."""
        pending = self._pending
        if pending is None:
            return self.state.get_last_command()
        if not pending.future.done() and reply_fits(pending.command, text):
            pending.future.set_result(text)
            return pending.command

        self.stray_replies += 1
        logger.debug("Commands | event=stray_reply | pending=%s | reply=%s", pending.command, text)
        return None

    def handle_transport_error(self, exc: Exception) -> None:
        logger.warning("Commands | event=socket_error | error=%s", exc)

    def classify(self, text: str, command: Optional[str]) -> Optional[Tuple[str, Any]]:
        """
        Attribute a reply to a telemetry field and update the snapshot.

        Returns:
            (field, value) when the reply was telemetry, None otherwise
        """
        match = _NUMERIC_REPLY.match(text)
        if match is None:
            return None

        number, unit = match.groups()
        field = TELEMETRY_UNIT_FIELDS.get(unit.lower()) if unit else None
        if field is None:
            field = READ_COMMAND_FIELDS.get(command)
        if field is None:
            logger.debug("Commands | event=unattributed_reply | command=%s | reply=%s", command, text)
            return None

        value: Any = float(number) if field == "speed" else int(float(number))
        self.state.update_telemetry(field, value)
        return field, value

    def build_state_message(self) -> Dict[str, Any]:
        return {
            "type": DRONE_STATE_MESSAGE,
            "value": self.state.get_telemetry().to_dict(),
            "timestamp": int(datetime.now().timestamp() * 1000),
        }

    # Telemetry polling

    def start_polling(self) -> None:
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Commands | event=polling_started")

    async def stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Commands | event=polling_cancelled")
        logger.info("Commands | event=polling_stopped")

    async def _poll_loop(self) -> None:
        """Issue each read-command on its own interval, one at a time."""
        loop = asyncio.get_running_loop()
        schedule: Dict[str, float] = self.telemetry_config["poll_schedule"]
        tick = self.telemetry_config.get("poll_tick_seconds", 0.5)
        timeout = self.telemetry_config.get("poll_response_timeout_seconds", 1.0)
        next_due = {command: 0.0 for command in schedule}

        while True:
            try:
                for command, interval in schedule.items():
                    now = loop.time()
                    if now < next_due[command]:
                        continue
                    next_due[command] = now + interval
                    if await self.exchange(command, timeout) is None:
                        self.missed_polls += 1
                await asyncio.sleep(tick)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Commands | event=poll_error | error=%s", e)
                await asyncio.sleep(tick)

    def get_status(self) -> Dict[str, Any]:
        return {
            "socket_open": self.transport is not None,
            "drone": "%s:%s" % self.drone_address,
            "polling": self.is_polling,
            "last_command": self.state.get_last_command(),
            "commands_sent": self.commands_sent,
            "replies_received": self.replies_received,
            "missed_polls": self.missed_polls,
            "stray_replies": self.stray_replies,
        }
