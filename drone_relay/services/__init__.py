"""
Relay Services Package

Contains the relay pipeline components:
- connection_state: Shared record of process handles, viewers and telemetry
- transcoder: Streaming ffmpeg supervisor
- frame_chunker: MPEG-TS aligned chunking
- viewer_registry: Viewer bookkeeping and broadcast
- recording: Recording tee into a second ffmpeg
- command_relay: UDP drone commands and telemetry
- relay_service: Pipeline wiring used by the API layer
"""

from .connection_state import ConnectionStateStore
from .transcoder import TranscoderSupervisor
from .frame_chunker import FrameChunker
from .viewer_registry import ViewerRegistry
from .recording import RecordingSink
from .command_relay import CommandRelay, CommandResult
from .relay_service import DroneRelayService, get_relay_service

__all__ = [
    'ConnectionStateStore',
    'TranscoderSupervisor',
    'FrameChunker',
    'ViewerRegistry',
    'RecordingSink',
    'CommandRelay',
    'CommandResult',
    'DroneRelayService',
    'get_relay_service'
]
