from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from shared.protocol import NEGOTIATION_TIMEOUT_SECONDS, RelayEvent, Role

from .events import EventBus, Subscription

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "flipboard-data"
STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]

Signaler = Callable[[RelayEvent, Dict[str, Any]], Awaitable[None]]
MessageCallback = Callable[[Dict[str, Any]], Awaitable[None] | None]
StatusCallback = Callable[["P2PStatus"], None]


class P2PStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


def default_peer_factory() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=STUN_SERVERS)]))


class P2PNegotiator:
    """Upgrades message delivery to a WebRTC data channel when the network allows it.

    The controller always offers and creates the channel; the display always
    answers. Failure only means the relay stays the transport.
    """

    def __init__(
        self,
        role: Role,
        signal: Signaler,
        *,
        on_message: Optional[MessageCallback] = None,
        on_status: Optional[StatusCallback] = None,
        peer_factory: Callable[[], Any] = default_peer_factory,
        negotiation_timeout: float = NEGOTIATION_TIMEOUT_SECONDS,
    ) -> None:
        self._role = role
        self._signal = signal
        self._on_message = on_message
        self._on_status = on_status
        self._peer_factory = peer_factory
        self._negotiation_timeout = negotiation_timeout
        self._pc: Any = None
        self._channel: Any = None
        self._remote_peer: Optional[str] = None
        self._status = P2PStatus.DISCONNECTED
        self._gave_up = False
        self._deadline_task: Optional[asyncio.Task[None]] = None
        self._subscriptions: List[Subscription] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def status(self) -> P2PStatus:
        return self._status

    @property
    def is_p2p(self) -> bool:
        return self._status == P2PStatus.CONNECTED

    @property
    def gave_up(self) -> bool:
        return self._gave_up

    def attach(self, bus: EventBus) -> None:
        self.detach()
        self._subscriptions = [
            bus.subscribe(RelayEvent.WEBRTC_OFFER, self._handle_offer),
            bus.subscribe(RelayEvent.WEBRTC_ANSWER, self._handle_answer),
            bus.subscribe(RelayEvent.WEBRTC_ICE_CANDIDATE, self._handle_candidate),
        ]

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    async def start(self, target: Optional[str] = None) -> bool:
        """Begin negotiation from the controller side."""

        if self._role != Role.CONTROLLER:
            logger.debug("Only the controller starts P2P negotiation")
            return False
        if self._gave_up:
            logger.debug("P2P was given up for this attempt; call reset() first")
            return False
        await self.cleanup()
        self._remote_peer = target
        self._set_status(P2PStatus.CONNECTING)
        try:
            pc = self._create_peer()
            self._bind_channel(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            await self._send_signal(RelayEvent.WEBRTC_OFFER, {"offer": self._describe(pc.localDescription)})
        except Exception:
            logger.warning("P2P offer failed; staying on relay", exc_info=True)
            await self.cleanup(P2PStatus.FAILED)
            return False
        self._start_deadline()
        return True

    def send_message(self, data: Dict[str, Any]) -> bool:
        channel = self._channel
        if channel is None or channel.readyState != "open":
            return False
        try:
            channel.send(json.dumps(data, separators=(",", ":")))
        except Exception:
            logger.debug("Data channel send failed", exc_info=True)
            return False
        return True

    async def cleanup(self, final_status: Optional[P2PStatus] = None) -> None:
        """Close the channel and peer connection and return to ``disconnected``."""

        self._cancel_deadline()
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        if channel is not None:
            try:
                channel.close()
            except Exception:
                logger.debug("Error closing data channel", exc_info=True)
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                logger.debug("Error closing peer connection", exc_info=True)
        if self._status != P2PStatus.DISCONNECTED:
            self._set_status(final_status or P2PStatus.CLOSED)
            self._set_status(P2PStatus.DISCONNECTED)

    def reset(self) -> None:
        self._gave_up = False

    async def close(self) -> None:
        self.detach()
        await self.cleanup()
        for task in list(self._tasks):
            task.cancel()

    def _create_peer(self) -> Any:
        pc = self._peer_factory()
        self._pc = pc

        @pc.on("connectionstatechange")
        def _on_state() -> None:
            if pc is not self._pc:
                return
            state = pc.connectionState
            logger.debug("Peer connection state %s", state)
            if state in ("failed", "closed"):
                self._spawn(self.cleanup(P2PStatus.FAILED if state == "failed" else P2PStatus.CLOSED))

        # aiortc gathers candidates into the SDP and never emits this; kept for peers that trickle.
        @pc.on("icecandidate")
        def _on_candidate(candidate: Any) -> None:
            if candidate is None or pc is not self._pc:
                return
            self._spawn(
                self._send_signal(
                    RelayEvent.WEBRTC_ICE_CANDIDATE,
                    {
                        "candidate": {
                            "candidate": getattr(candidate, "candidate", None) or str(candidate),
                            "sdpMid": getattr(candidate, "sdpMid", None),
                            "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
                        }
                    },
                )
            )

        if self._role == Role.DISPLAY:

            @pc.on("datachannel")
            def _on_datachannel(channel: Any) -> None:
                if pc is not self._pc:
                    return
                self._bind_channel(channel)
                if channel.readyState == "open":
                    self._mark_connected()

        return pc

    def _bind_channel(self, channel: Any) -> None:
        self._channel = channel

        @channel.on("open")
        def _on_open() -> None:
            if channel is self._channel:
                self._mark_connected()

        @channel.on("message")
        def _on_message(raw: Any) -> None:
            if channel is not self._channel:
                return
            try:
                data = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("Dropping malformed data channel message")
                return
            if isinstance(data, dict) and self._on_message is not None:
                self._spawn(self._deliver(data))

        @channel.on("close")
        def _on_close() -> None:
            if channel is self._channel:
                self._spawn(self.cleanup(P2PStatus.CLOSED))

    async def _deliver(self, data: Dict[str, Any]) -> None:
        assert self._on_message is not None
        try:
            result = self._on_message(data)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling data channel message")

    async def _handle_offer(self, data: Dict[str, Any]) -> None:
        if self._role != Role.DISPLAY:
            return
        offer = data.get("offer")
        if not isinstance(offer, dict):
            logger.warning("Ignoring offer without a session description")
            return
        await self.cleanup()
        self._remote_peer = data.get("from")
        self._set_status(P2PStatus.CONNECTING)
        try:
            pc = self._create_peer()
            await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            await self._send_signal(RelayEvent.WEBRTC_ANSWER, {"answer": self._describe(pc.localDescription)})
        except Exception:
            logger.warning("P2P answer failed; staying on relay", exc_info=True)
            await self.cleanup(P2PStatus.FAILED)
            return
        self._start_deadline()

    async def _handle_answer(self, data: Dict[str, Any]) -> None:
        pc = self._pc
        answer = data.get("answer")
        if self._role != Role.CONTROLLER or pc is None or not isinstance(answer, dict):
            return
        if pc.signalingState != "have-local-offer":
            logger.debug("Ignoring answer in signaling state %s", pc.signalingState)
            return
        self._remote_peer = data.get("from") or self._remote_peer
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
        except Exception:
            logger.warning("Failed to apply P2P answer", exc_info=True)
            await self.cleanup(P2PStatus.FAILED)

    async def _handle_candidate(self, data: Dict[str, Any]) -> None:
        pc = self._pc
        raw = data.get("candidate")
        if pc is None or not isinstance(raw, dict) or not raw.get("candidate"):
            return
        sdp = str(raw["candidate"])
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]
        try:
            candidate = candidate_from_sdp(sdp)
            candidate.sdpMid = raw.get("sdpMid")
            candidate.sdpMLineIndex = raw.get("sdpMLineIndex")
            await pc.addIceCandidate(candidate)
        except Exception:
            logger.debug("Ignoring unusable ICE candidate", exc_info=True)

    async def _send_signal(self, event: RelayEvent, data: Dict[str, Any]) -> None:
        if self._remote_peer:
            data["target"] = self._remote_peer
        await self._signal(event, data)

    def _start_deadline(self) -> None:
        self._cancel_deadline()
        if self._status != P2PStatus.CONNECTED:
            self._deadline_task = asyncio.create_task(self._deadline())

    def _cancel_deadline(self) -> None:
        task, self._deadline_task = self._deadline_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _deadline(self) -> None:
        await asyncio.sleep(self._negotiation_timeout)
        if self._status == P2PStatus.CONNECTED:
            return
        logger.info("P2P negotiation timed out after %ss; using relay only", self._negotiation_timeout)
        self._gave_up = True
        await self.cleanup(P2PStatus.FAILED)

    def _mark_connected(self) -> None:
        self._cancel_deadline()
        self._set_status(P2PStatus.CONNECTED)

    def _set_status(self, status: P2PStatus) -> None:
        if self._status == status:
            return
        logger.info("P2P status %s -> %s", self._status.value, status.value)
        self._status = status
        if self._on_status is not None:
            try:
                self._on_status(status)
            except Exception:
                logger.exception("P2P status callback failed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _describe(description: Any) -> Dict[str, str]:
        return {"sdp": description.sdp, "type": description.type}
