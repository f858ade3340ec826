from mediadrop.server.chunks.assembly import AssembledFile, AssemblyService
from mediadrop.server.chunks.store import ChunkStore
from mediadrop.server.chunks.sweeper import ChunkSweeperWorker, sweep_abandoned_sessions

__all__ = [
    "AssembledFile",
    "AssemblyService",
    "ChunkStore",
    "ChunkSweeperWorker",
    "sweep_abandoned_sessions",
]
