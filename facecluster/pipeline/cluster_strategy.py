"""Cluster strategy orchestration: load, discover, assign, propagate, flush."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from facecluster.clustering.engine import AlbumStats, ClusterEngine
from facecluster.clustering.propagation import IdentityPropagator, PropagationStats
from facecluster.concurrency import ProgressCallback, ProgressCounter, WorkerPool
from facecluster.config import ClusterConfig
from facecluster.storage.library import Library
from facecluster.storage.store import ClusterStore
from facecluster.types import Album, ClusterInvariantError, LibraryError

LOGGER = logging.getLogger("facecluster.pipeline.cluster")

# Collaborator failures that skip an album for this pass instead of aborting it.
ALBUM_IO_ERRORS = (OSError, LibraryError, json.JSONDecodeError)
# Decoding failures of stored records, e.g. a root reference id that no longer parses.
PERSISTED_STATE_ERRORS = (KeyError, TypeError, ValueError)


@dataclass
class PassOutcome:
    ok: bool
    strategy: str
    clusters: int = 0
    discovery: AlbumStats = field(default_factory=lambda: AlbumStats(album="*"))
    assignment: AlbumStats = field(default_factory=lambda: AlbumStats(album="*"))
    propagation: PropagationStats = field(default_factory=PropagationStats)
    skipped_albums: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def summary(self) -> str:
        state = "ok" if self.ok else f"failed ({self.error})"
        return (
            f"{self.strategy}: {state}; clusters={self.clusters} "
            f"created={self.discovery.created} pruned={self.discovery.pruned} "
            f"assigned={self.assignment.matched} labeled={self.propagation.labeled} "
            f"synthesized={self.propagation.synthesized} skipped_albums={len(self.skipped_albums)}"
        )


class ClusterStrategyRunner:
    def __init__(
        self,
        library: Library,
        store: ClusterStore,
        config: Optional[ClusterConfig] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.library = library
        self.store = store
        self.config = config or ClusterConfig()
        self.progress = ProgressCounter(callback=progress)
        self.engine = ClusterEngine(store, library, self.config)

    async def _sweep(
        self,
        albums: List[Album],
        step: Callable[[Album], Awaitable[AlbumStats]],
        totals: AlbumStats,
        skipped: List[str],
    ) -> None:
        """Run ``step`` over all albums with bounded concurrency and wait for all to drain."""
        pool = WorkerPool(self.config.album_workers)
        self.progress.reset(len(albums))

        async def _one(album: Album) -> None:
            try:
                stats = await step(album)
            except ALBUM_IO_ERRORS as exc:
                LOGGER.warning("Skipping album %s for this pass: %s", album.display_name, exc)
                if album.key not in skipped:
                    skipped.append(album.key)
            else:
                totals.merge(stats)
            finally:
                self.progress.advance()

        await pool.map(_one, albums)

    async def run(self) -> PassOutcome:
        """Run the full strategy. Never raises; failures are reported in the outcome."""
        outcome = PassOutcome(ok=False, strategy=self.config.strategy_tag)
        try:
            await self.store.load(self.library.read_reference)
            albums = await self.library.list_albums()
            LOGGER.info("Cluster strategy over %d albums (%d known clusters)", len(albums), len(self.store))

            self.engine.begin_discovery()
            await self._sweep(albums, self.engine.discover_roots, outcome.discovery, outcome.skipped_albums)
            # Pass 2 relies on the final root set.
            await self._sweep(albums, self.engine.assign_members, outcome.assignment, outcome.skipped_albums)

            propagator = IdentityPropagator(
                self.store,
                self.library,
                strategy=self.config.strategy_tag,
                pool=WorkerPool(self.config.album_workers),
            )
            outcome.propagation = await propagator.run()
            await self.store.flush()
            outcome.ok = True
        except ClusterInvariantError as exc:
            LOGGER.error("Cluster invariant violated, aborting pass: %s", exc)
            outcome.error = str(exc)
        except ALBUM_IO_ERRORS as exc:
            LOGGER.error("Cluster strategy could not run: %s", exc)
            outcome.error = str(exc)
        except PERSISTED_STATE_ERRORS as exc:
            LOGGER.error("Persisted cluster state is malformed, aborting pass: %r", exc)
            outcome.error = f"malformed cluster state: {exc!r}"
        except asyncio.CancelledError:
            LOGGER.warning("Cluster strategy cancelled; persisted memberships are kept")
            outcome.error = "cancelled"
            raise
        outcome.clusters = len(self.store)
        LOGGER.info(outcome.summary())
        return outcome


def run_cluster_strategy(
    library: Library,
    store: ClusterStore,
    config: Optional[ClusterConfig] = None,
    progress: Optional[ProgressCallback] = None,
) -> PassOutcome:
    """Blocking entry point for batch jobs."""
    return asyncio.run(ClusterStrategyRunner(library, store, config, progress).run())
