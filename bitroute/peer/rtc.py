"""
aiortc Transport

Implements the transport interface on top of aiortc's RTCPeerConnection.
aiortc gathers every local candidate inside setLocalDescription(), so the
SDP returned from create_offer()/accept_offer() is already complete.
"""

import logging
from typing import List, Dict, Any

from aiortc import (
    RTCPeerConnection, RTCSessionDescription, RTCConfiguration, RTCIceServer,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from ..errors import ChannelNotOpen
from .transport import DataChannel, PeerConnection, Frame

logger = logging.getLogger(__name__)


def build_rtc_configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
    """Create an RTCConfiguration from config-style ICE server dicts."""
    servers = []
    for server in ice_servers:
        servers.append(RTCIceServer(
            urls=server['urls'],
            username=server.get('username'),
            credential=server.get('credential'),
        ))
    return RTCConfiguration(iceServers=servers)


class RTCDataChannelAdapter(DataChannel):
    """Wraps an aiortc RTCDataChannel."""

    def __init__(self, channel):
        super().__init__()
        self._channel = channel

        @channel.on("open")
        def on_open():
            self._emit_open()

        @channel.on("message")
        def on_message(message):
            self._emit_message(message)

        @channel.on("close")
        def on_close():
            self._emit_close()

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def send(self, data: Frame):
        try:
            self._channel.send(data)
        except InvalidStateError as e:
            raise ChannelNotOpen(f"Data channel is {self._channel.readyState}") from e

    def close(self):
        self._channel.close()


class RTCPeer(PeerConnection):
    """PeerConnection backed by aiortc."""

    def __init__(self, ice_servers: List[Dict[str, Any]]):
        super().__init__()
        self._pc = RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))

        @self._pc.on("datachannel")
        def on_datachannel(channel):
            logger.debug(f"Remote opened data channel '{channel.label}'")
            self._emit_datachannel(RTCDataChannelAdapter(channel))

        @self._pc.on("connectionstatechange")
        async def on_state_change():
            logger.info(f"Peer connection state: {self._pc.connectionState}")

    def create_data_channel(self, label: str) -> DataChannel:
        return RTCDataChannelAdapter(self._pc.createDataChannel(label, ordered=True))

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._pc.localDescription.sdp

    async def accept_offer(self, sdp: str) -> str:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type='offer'))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._pc.localDescription.sdp

    async def accept_answer(self, sdp: str):
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type='answer'))

    async def add_ice_candidate(self, candidate: Dict[str, Any]):
        line = (candidate or {}).get('candidate')
        if not line:
            # End-of-candidates marker
            return
        if line.startswith('candidate:'):
            line = line[len('candidate:'):]

        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get('sdpMid')
        ice.sdpMLineIndex = candidate.get('sdpMLineIndex')
        await self._pc.addIceCandidate(ice)

    async def close(self):
        await self._pc.close()


def rtc_peer_factory(ice_servers: List[Dict[str, Any]]):
    """Return a zero-argument factory producing RTCPeer instances."""
    def factory() -> PeerConnection:
        return RTCPeer(ice_servers)
    return factory
