"""
Web3 Ledger Client (Production Mode)

web3.py implementation of the read-only ledger interface.
HTTP JSON-RPC for contract calls, WebSocket eth_subscribe for logs.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider
from web3.exceptions import ContractLogicError, Web3Exception
from websockets.exceptions import WebSocketException

from ledger_sync.exceptions import TransientTransportFault, UnknownEntityFault
from .abi import ELECTION_CONTRACT_ABI, VOTE_CAST_V2_SIGNATURE, VOTED_V1_SIGNATURE
from .base import (
    CandidateTally,
    ElectionSnapshot,
    EventFilter,
    LedgerClient,
    LedgerSubscription,
    PositionTally,
    ProtocolVersion,
    VoteCastEvent,
)

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
    WebSocketException,
    Web3Exception,
)

VOTED_V1_TOPIC = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=VOTED_V1_SIGNATURE))
VOTE_CAST_V2_TOPIC = AsyncWeb3.to_hex(AsyncWeb3.keccak(text=VOTE_CAST_V2_SIGNATURE))


def decode_vote_log(contract, log: Dict[str, Any]) -> Optional[VoteCastEvent]:
    """
    Decode a raw log into a VoteCastEvent.

    Returns None for logs that are not one of the vote-cast events.
    """
    topics = log.get("topics") or []
    if not topics:
        return None
    topic0 = topics[0].lower() if isinstance(topics[0], str) else AsyncWeb3.to_hex(topics[0])

    if topic0 == VOTED_V1_TOPIC:
        decoded = contract.events.Voted().process_log(log)
        version = ProtocolVersion.v1
    elif topic0 == VOTE_CAST_V2_TOPIC:
        decoded = contract.events.VoteCast().process_log(log)
        version = ProtocolVersion.v2
    else:
        return None

    args = decoded["args"]
    return VoteCastEvent(
        voter_address=args["voter"],
        election_id=str(args["electionId"]),
        position_ids=tuple(str(p) for p in args["positionIds"]),
        candidate_id=str(args["candidateId"]) if version == ProtocolVersion.v2 else None,
        protocol_version=version,
        tx_hash=AsyncWeb3.to_hex(decoded["transactionHash"]),
        block_number=int(decoded["blockNumber"]),
        log_index=int(decoded["logIndex"]),
    )


class Web3Subscription(LedgerSubscription):
    """
    One eth_subscribe("logs") stream on its own WebSocket connection.

    Backfilled logs (from_block replay) are yielded before live ones.
    """

    def __init__(self, w3: AsyncWeb3, subscription_id: str, contract, backlog: List[Dict[str, Any]]):
        self.id = str(subscription_id)
        self._w3 = w3
        self._contract = contract
        self._backlog = backlog
        self._closed = False

    async def events(self):
        for log in self._backlog:
            event = self._decode(log)
            if event is not None:
                yield event
        self._backlog = []

        try:
            async for message in self._w3.socket.process_subscriptions():
                if message.get("subscription") not in (None, self.id):
                    continue
                event = self._decode(message["result"])
                if event is not None:
                    yield event
        except TRANSPORT_ERRORS as e:
            if self._closed:
                return
            raise TransientTransportFault(f"Subscription {self.id} dropped: {e}") from e

        if not self._closed:
            raise TransientTransportFault(f"Subscription {self.id} stream ended")

    def _decode(self, log: Dict[str, Any]) -> Optional[VoteCastEvent]:
        try:
            return decode_vote_log(self._contract, log)
        except Web3Exception as e:
            logger.warning(f"Skipping undecodable log in subscription {self.id}: {e}")
            return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._w3.eth.unsubscribe(self.id)
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Unsubscribe {self.id} failed: {e}")
        try:
            await self._w3.provider.disconnect()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"WebSocket disconnect for {self.id} failed: {e}")


class Web3LedgerClient(LedgerClient):
    """
    Ledger client for an EVM chain (Polygon in production).

    Every call is bounded by call_timeout.
    """

    def __init__(
        self,
        contract_address: str,
        rpc_url: Optional[str] = None,
        ws_url: Optional[str] = None,
        call_timeout: float = 30.0,
    ):
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.call_timeout = call_timeout
        self._http: Optional[AsyncWeb3] = None
        self._contract = None

    async def connect(self) -> None:
        if self._http is not None:
            return
        if not self.rpc_url:
            return
        self._http = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        self._contract = self._http.eth.contract(address=self.contract_address, abi=ELECTION_CONTRACT_ABI)
        try:
            chain_id = await self._call(self._http.eth.chain_id)
        except TransientTransportFault:
            self._http = None
            self._contract = None
            raise
        logger.info(f"Connected to ledger RPC (chain {chain_id}), contract {self.contract_address}")

    async def _call(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except ContractLogicError:
            raise
        except TRANSPORT_ERRORS as e:
            raise TransientTransportFault(f"Ledger call failed: {e}") from e

    async def _require_http(self):
        if self._http is None:
            await self.connect()
        if self._http is None:
            raise TransientTransportFault("No ledger RPC endpoint configured")
        return self._contract

    def _log_filter(self) -> Dict[str, Any]:
        return {
            "address": self.contract_address,
            "topics": [[VOTED_V1_TOPIC, VOTE_CAST_V2_TOPIC]],
        }

    async def subscribe(self, event_filter: EventFilter) -> LedgerSubscription:
        if not self.ws_url:
            raise TransientTransportFault("No ledger WebSocket endpoint configured")
        if event_filter.contract_address and (
            event_filter.contract_address.lower() != self.contract_address.lower()
        ):
            raise ValueError(
                f"Client is bound to {self.contract_address}, not {event_filter.contract_address}"
            )

        backlog: List[Dict[str, Any]] = []
        if event_filter.from_block is not None and self.rpc_url:
            await self._require_http()
            params = dict(self._log_filter(), fromBlock=event_filter.from_block, toBlock="latest")
            backlog = list(await self._call(self._http.eth.get_logs(params)))
            logger.info(f"Backfilled {len(backlog)} vote logs from block {event_filter.from_block}")

        w3 = AsyncWeb3(WebSocketProvider(self.ws_url))
        try:
            await self._call(w3.provider.connect())
            subscription_id = await self._call(w3.eth.subscribe("logs", self._log_filter()))
        except TransientTransportFault:
            try:
                await w3.provider.disconnect()
            except TRANSPORT_ERRORS:
                pass
            raise

        contract = w3.eth.contract(address=self.contract_address, abi=ELECTION_CONTRACT_ABI)
        logger.info(f"Subscribed to vote logs on {self.contract_address} (subscription {subscription_id})")
        return Web3Subscription(w3, subscription_id, contract, backlog)

    async def get_election_snapshot(self, election_id: str) -> ElectionSnapshot:
        contract = await self._require_http()
        try:
            position_ids, candidate_ids, vote_counts = await self._call(
                contract.functions.getElectionResults(election_id).call()
            )
        except ContractLogicError as e:
            raise UnknownEntityFault("election", election_id) from e

        positions = []
        for index, position_id in enumerate(position_ids):
            ids = candidate_ids[index] if index < len(candidate_ids) else []
            counts = vote_counts[index] if index < len(vote_counts) else []
            positions.append(PositionTally(
                id=str(position_id),
                candidates=tuple(
                    CandidateTally(id=str(cid), vote_count=int(count))
                    for cid, count in zip(ids, counts)
                ),
            ))
        return ElectionSnapshot(election_id=election_id, positions=tuple(positions))

    async def get_candidate_vote_count(
        self,
        election_id: str,
        position_id: str,
        candidate_id: str,
    ) -> int:
        contract = await self._require_http()
        try:
            count = await self._call(
                contract.functions.getCandidateVoteCount(election_id, position_id, candidate_id).call()
            )
        except ContractLogicError as e:
            raise UnknownEntityFault("candidate", candidate_id) from e
        return int(count)

    async def close(self) -> None:
        if self._http is not None:
            session_close = getattr(self._http.provider, "disconnect", None)
            if session_close is not None:
                try:
                    await session_close()
                except TRANSPORT_ERRORS as e:
                    logger.debug(f"HTTP provider disconnect failed: {e}")
        self._http = None
        self._contract = None
        logger.info("Ledger client closed")
