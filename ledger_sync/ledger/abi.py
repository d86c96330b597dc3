"""
ledger_sync/ledger/abi.py
ABI fragments of the election contract used by the sync service.

Only the read surface and the two vote-cast event shapes are listed.
"""

VOTED_V1_SIGNATURE = "Voted(address,string,string[])"
VOTE_CAST_V2_SIGNATURE = "VoteCast(address,string,string[],string)"

ELECTION_CONTRACT_ABI = [
    {
        "anonymous": False,
        "name": "Voted",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "voter", "type": "address"},
            {"indexed": False, "name": "electionId", "type": "string"},
            {"indexed": False, "name": "positionIds", "type": "string[]"},
        ],
    },
    {
        "anonymous": False,
        "name": "VoteCast",
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "voter", "type": "address"},
            {"indexed": False, "name": "electionId", "type": "string"},
            {"indexed": False, "name": "positionIds", "type": "string[]"},
            {"indexed": False, "name": "candidateId", "type": "string"},
        ],
    },
    {
        "name": "getElectionResults",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "electionId", "type": "string"}],
        "outputs": [
            {"name": "positionIds", "type": "string[]"},
            {"name": "candidateIds", "type": "string[][]"},
            {"name": "voteCounts", "type": "uint256[][]"},
        ],
    },
    {
        "name": "getCandidateVoteCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "electionId", "type": "string"},
            {"name": "positionId", "type": "string"},
            {"name": "candidateId", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
