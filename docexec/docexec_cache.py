"""
Incremental, grouped execution of code fragments.

Each group of fragments owns a `RunCache`: the texts it last ran, their
captured outputs and results, and the evaluation context they ran in.
Re-running a group reuses the cached entries for the longest unchanged
prefix and re-evaluates the first changed fragment and everything after
it, since later fragments may depend on state left by earlier ones.
"""
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from docexec.docexec_datatypes import ConfigurationError, EvaluationContext
from docexec.docexec_evaluator import Evaluator

logger = logging.getLogger(__name__)


class RunCache:
    """Cached texts, outputs and results for one group, bound to one context."""

    def __init__(self, context: EvaluationContext, blocks: Sequence[str] = (),
                 outputs: Sequence[str] = (), results: Sequence[Any] = ()):
        self.context = context
        self.blocks: List[str] = list(blocks)
        self.outputs: List[str] = list(outputs)
        self.results: List[Any] = list(results)

    def __len__(self) -> int:
        return len(self.blocks)

    def __repr__(self) -> str:
        return f"RunCache({self.context.name})"


def run_block(evaluator: Evaluator, context: EvaluationContext, block: str):
    return evaluator.evaluate(context, block)


def run_blocks_cached(cache: RunCache, blocks: Iterable[str], evaluator: Evaluator) -> RunCache:
    """Runs `blocks` in the cache's context, reusing results up to the first change.

    Returns a new cache bound to the same context. Once one block is
    re-evaluated every following block is re-evaluated too, even if its
    text is unchanged.
    """
    blocks = list(blocks)
    outputs, results = [], []
    updated = False
    reused = 0
    for i, block in enumerate(blocks):
        old_block = cache.blocks[i] if i < len(cache.blocks) else None
        if not updated and old_block == block:
            output, result = cache.outputs[i], cache.results[i]
            reused += 1
        else:
            output, result = run_block(evaluator, cache.context, block)
            updated = True
        outputs.append(output)
        results.append(result)
    logger.debug("%r: reused %d of %d blocks", cache, reused, len(blocks))
    return RunCache(cache.context, blocks, outputs, results)


class CacheStore:
    """Maps group ids to their `RunCache`, guarded by a single lock.

    Starts empty. Entries are created lazily on first use, persist across
    rewrites, and are only ever removed all together by `reset`.
    """

    def __init__(self):
        self._caches: Dict[str, RunCache] = {}
        self.lock = threading.RLock()

    def get_or_create(self, group_id: str, evaluator: Evaluator) -> RunCache:
        with self.lock:
            cache = self._caches.get(group_id)
            if cache is None:
                cache = RunCache(evaluator.new_context(group_id))
                self._caches[group_id] = cache
            return cache

    def __getitem__(self, group_id: str) -> RunCache:
        with self.lock:
            return self._caches[group_id]

    def __setitem__(self, group_id: str, cache: RunCache):
        with self.lock:
            self._caches[group_id] = cache

    def __contains__(self, group_id: str) -> bool:
        with self.lock:
            return group_id in self._caches

    def __len__(self) -> int:
        with self.lock:
            return len(self._caches)

    def keys(self) -> List[str]:
        with self.lock:
            return list(self._caches)

    def reset(self):
        """Drops every group's cache and context."""
        with self.lock:
            for cache in self._caches.values():
                cache.context.close()
            self._caches.clear()

    def __repr__(self) -> str:
        return f"CacheStore({len(self)} groups)"


def execute_grouped(store: CacheStore, codes: Sequence[str], group_ids: Sequence[str],
                    evaluator: Optional[Evaluator] = None) -> Tuple[List[str], List[Any]]:
    """Runs every group's fragments through its cache and restores the original order.

    The store lock is held for the whole pass so concurrent rewrites can
    neither create two contexts for one group nor overwrite a fresher cache
    with a stale one.
    """
    if len(codes) != len(group_ids):
        raise ConfigurationError(f"Got {len(codes)} code blocks but {len(group_ids)} group ids")
    evaluator = evaluator or Evaluator()

    positions = []
    codes_grouped: Dict[str, List[str]] = {}
    for gid, code in zip(group_ids, codes):
        group_codes = codes_grouped.setdefault(gid, [])
        group_codes.append(code)
        positions.append((gid, len(group_codes) - 1))

    with store.lock:
        for gid, group_codes in codes_grouped.items():
            cache = store.get_or_create(gid, evaluator)
            store[gid] = run_blocks_cached(cache, group_codes, evaluator)

        outputs = [store[gid].outputs[i] for gid, i in positions]
        results = [store[gid].results[i] for gid, i in positions]
    return outputs, results
