"""
Gene-set annotation lookup for enrichment input construction.

The enrichment stage needs, for every tested gene, the set of gene sets it
belongs to. That mapping comes from outside the pipeline: a curated GMT file
or an annotation web service. Both are exposed through one interface.

    GeneSetResolver.resolve(gene_ids) -> {gene_id: {set_id, ...}}

Genes without annotation are simply absent from the returned mapping; callers
count and drop them (see `build_gene_sets`).

Implementations:
    StaticGeneSetResolver: in-memory mapping or GMT file
    MyGeneSetResolver: mygene.info batch queries for GO (BP/MF/CC) terms and
        KEGG pathways. Batched, concurrent (bounded thread pool), with a
        per-batch timeout and retry with exponential backoff on transient
        network errors.

A lookup failure raises AnnotationLookupError. It only gates the enrichment
stage; the differential expression table does not depend on it.

Examples:
    >>> from rnaseqde.validation.annotation_providers import StaticGeneSetResolver
    >>> resolver = StaticGeneSetResolver.from_gmt(Path("hallmark.gmt"))
    >>> membership = resolver.resolve(table['feature_id'])
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from rnaseqde.exceptions import AnnotationLookupError

logger = logging.getLogger(__name__)

__all__ = [
    'GeneSetResolver',
    'StaticGeneSetResolver',
    'MyGeneSetResolver',
    'resolver_from_config',
]


class GeneSetResolver(ABC):
    """Abstract interface for gene → gene-set annotation sources."""

    @abstractmethod
    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, Set[str]]:
        """
        Look up gene-set memberships.

        Args:
            gene_ids: Gene identifiers to annotate

        Returns:
            Mapping gene_id → set IDs, containing only genes with at least
            one annotation

        Raises:
            AnnotationLookupError: If the annotation source cannot be reached
        """


class StaticGeneSetResolver(GeneSetResolver):
    """
    Resolver backed by a fixed mapping.

    Examples:
        >>> resolver = StaticGeneSetResolver({'TP53': {'apoptosis'}})
        >>> resolver.resolve(['TP53', 'GAPDH'])
        {'TP53': {'apoptosis'}}
    """

    def __init__(self, membership: Mapping[str, Iterable[str]]):
        self._membership = {
            str(gene): frozenset(str(s) for s in set_ids)
            for gene, set_ids in membership.items()
        }

    @classmethod
    def from_gene_sets(cls, gene_sets: Mapping[str, Iterable[str]]) -> "StaticGeneSetResolver":
        """Build from set_id → member genes."""
        membership: Dict[str, Set[str]] = defaultdict(set)
        for set_id, genes in gene_sets.items():
            for gene in genes:
                membership[str(gene)].add(str(set_id))
        return cls(membership)

    @classmethod
    def from_gmt(cls, path: Path) -> "StaticGeneSetResolver":
        """Build from a GMT file (one set per line)."""
        from rnaseqde.io.loaders import read_gmt

        return cls.from_gene_sets(read_gmt(path))

    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, Set[str]]:
        result = {}
        for gene in gene_ids:
            set_ids = self._membership.get(str(gene))
            if set_ids:
                result[str(gene)] = set(set_ids)
        return result


class MyGeneSetResolver(GeneSetResolver):
    """
    GO and KEGG memberships from mygene.info.

    Queries are split into batches of `batch_size` IDs and run concurrently
    on at most `max_workers` threads. Each batch is retried up to
    `max_retries` times on transient errors (connection resets, timeouts,
    HTTP 429/5xx), sleeping `backoff * 2**attempt` seconds in between.

    Set IDs are GO term IDs ("GO:0006915") and KEGG pathway IDs prefixed
    with "KEGG:" ("KEGG:hsa04115").

    Usage:
        resolver = MyGeneSetResolver(species='human', max_workers=4)
        membership = resolver.resolve(['TP53', 'BRCA1'])
    """

    _TRANSIENT_ERROR_KEYWORDS = (
        'timeout', 'timed out', 'connection', 'temporarily', 'unavailable',
        '429', '502', '503', '504',
    )

    def __init__(
        self,
        species: str = 'human',
        scopes: str = 'symbol,ensembl.gene,entrezgene',
        go_categories: Sequence[str] = ('BP', 'MF', 'CC'),
        include_kegg: bool = True,
        batch_size: int = 1000,
        max_workers: int = 4,
        max_retries: int = 2,
        timeout: float = 30.0,
        backoff: float = 1.0,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        self.species = species
        self.scopes = scopes
        self.go_categories = tuple(go_categories)
        self.include_kegg = include_kegg
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff = backoff

    @property
    def fields(self) -> List[str]:
        fields = [f'go.{cat}.id' for cat in self.go_categories]
        if self.include_kegg:
            fields.append('pathway.kegg.id')
        return fields

    def _is_transient(self, error: Exception) -> bool:
        if isinstance(error, (ConnectionError, TimeoutError)):
            return True
        message = str(error).lower()
        return any(word in message for word in self._TRANSIENT_ERROR_KEYWORDS)

    def _parse_hit(self, hit: dict) -> Set[str]:
        set_ids = set()

        go = hit.get('go') or {}
        for category in self.go_categories:
            terms = go.get(category) or []
            if isinstance(terms, dict):
                terms = [terms]
            set_ids.update(t['id'] for t in terms if isinstance(t, dict) and t.get('id'))

        if self.include_kegg:
            kegg = (hit.get('pathway') or {}).get('kegg') or []
            if isinstance(kegg, dict):
                kegg = [kegg]
            set_ids.update(f"KEGG:{p['id']}" for p in kegg if isinstance(p, dict) and p.get('id'))

        return set_ids

    def _query_batch(self, batch: List[str], batch_num: int, total_batches: int) -> Dict[str, Set[str]]:
        """Query one batch with retries. Thread-safe: one client per call."""
        import mygene

        mg = mygene.MyGeneInfo()

        for attempt in range(1 + self.max_retries):
            try:
                logger.debug(f"Querying batch {batch_num + 1}/{total_batches} ({len(batch)} IDs)")
                response = mg.querymany(
                    batch,
                    scopes=self.scopes,
                    fields=','.join(self.fields),
                    species=self.species,
                    returnall=True,
                    verbose=False,
                )
                break
            except Exception as e:
                if not self._is_transient(e):
                    raise AnnotationLookupError(
                        f"mygene.info query failed for batch {batch_num + 1}: {e}"
                    ) from e
                if attempt >= self.max_retries:
                    raise AnnotationLookupError(
                        f"mygene.info query failed after {1 + self.max_retries} attempts: {e}"
                    ) from e

                delay = self.backoff * (2 ** attempt)
                logger.warning(
                    "Transient error on batch %d, attempt %d/%d: %s (retrying in %.1fs)",
                    batch_num + 1, attempt + 1, 1 + self.max_retries, e, delay,
                )
                time.sleep(delay)

        results: Dict[str, Set[str]] = defaultdict(set)
        for hit in response.get('out', []):
            query = hit.get('query')
            if not query or hit.get('notfound'):
                continue
            set_ids = self._parse_hit(hit)
            if set_ids:
                results[str(query)].update(set_ids)

        return dict(results)

    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, Set[str]]:
        """
        Look up GO and KEGG memberships for gene_ids.

        A batch that runs past `timeout` raises AnnotationLookupError and
        batches not yet started are cancelled. The timed-out request is not
        interrupted: its worker thread is left to finish in the background
        and its result is discarded.
        """
        gene_ids = list(dict.fromkeys(str(g) for g in gene_ids))
        if not gene_ids:
            return {}

        batches = [gene_ids[i:i + self.batch_size] for i in range(0, len(gene_ids), self.batch_size)]
        logger.info(
            f"Resolving gene sets for {len(gene_ids)} genes in {len(batches)} batches "
            f"with {self.max_workers} workers"
        )

        results: Dict[str, Set[str]] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = [
                executor.submit(self._query_batch, batch, i, len(batches))
                for i, batch in enumerate(batches)
            ]
            for i, future in enumerate(futures):
                try:
                    batch_results = future.result(timeout=self.timeout)
                except FutureTimeoutError as e:
                    raise AnnotationLookupError(
                        f"mygene.info batch {i + 1}/{len(batches)} timed out after {self.timeout}s"
                    ) from e
                for gene, set_ids in batch_results.items():
                    results.setdefault(gene, set()).update(set_ids)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            f"Gene-set lookup complete: {len(results)}/{len(gene_ids)} genes annotated "
            f"({len(results) / len(gene_ids) * 100:.1f}%)"
        )
        return results


def resolver_from_config(
    gene_sets: Optional[Path] = None,
    use_mygene: bool = False,
    batch_size: int = 1000,
    max_workers: int = 4,
    max_retries: int = 2,
    timeout: float = 30.0,
    species: str = 'human',
) -> Optional[GeneSetResolver]:
    """
    GMT-backed resolver when a file is given, mygene.info when requested.

    Returns None when no annotation source is configured.
    """
    if gene_sets is not None:
        return StaticGeneSetResolver.from_gmt(Path(gene_sets))
    if not use_mygene:
        return None
    return MyGeneSetResolver(
        species=species,
        batch_size=batch_size,
        max_workers=max_workers,
        max_retries=max_retries,
        timeout=timeout,
    )
