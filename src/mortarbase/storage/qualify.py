"""
Qualification: which named graphs can answer which queries.

Every query is run against every named graph in the triple log (an R x G
job matrix). A fixed number of workers drain a bounded job queue; each
worker runs its jobs one after another and counts the solutions the
reasoner returns. A worker that hits an error stops taking jobs while the
others keep draining. All worker outcomes are collected before any error
is reported, so a partial failure still returns every count that completed.
"""

from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from mortarbase.context import OperationContext
from mortarbase.errors import PartialFailure, ValidationError
from mortarbase.reasoner import ReasonerClient

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


@dataclass(frozen=True)
class QualifyJob:
    """Run query ``index`` against ``graph``."""
    graph: str
    index: int
    query: str


@dataclass
class WorkerReport:
    """Everything one worker produced before it stopped."""
    counts: list[tuple[QualifyJob, int]] = field(default_factory=list)
    error: Optional[BaseException] = None
    failed_job: Optional[QualifyJob] = None


class QualificationEngine:
    """Fans queries out across every named graph through the reasoner."""

    def __init__(
        self,
        reasoner: ReasonerClient,
        list_graphs: Callable[[OperationContext], list[str]],
        workers: int = DEFAULT_WORKERS,
    ):
        if workers < 1:
            raise ValidationError("Qualification needs at least one worker")
        self._reasoner = reasoner
        self._list_graphs = list_graphs
        self.workers = workers

    def _work(self, ctx: OperationContext, jobs: "queue.Queue[QualifyJob]") -> WorkerReport:
        report = WorkerReport()
        wctx = ctx.child()
        try:
            while True:
                try:
                    job = jobs.get_nowait()
                except queue.Empty:
                    return report
                try:
                    wctx.check()
                    results = self._reasoner.query(wctx, job.graph, job.query)
                    wctx.check()
                except Exception as e:
                    wctx.logger.warning(f"Qualify job ({job.graph}, query {job.index}) failed: {e}")
                    report.error = e
                    report.failed_job = job
                    return report
                report.counts.append((job, len(results)))
        finally:
            wctx.token.detach()

    def qualify(
        self, ctx: OperationContext, queries: list[str]
    ) -> dict[str, list[Optional[int]]]:
        """
        Count solutions of each query in each named graph.

        Returns {graph: [count per query]}. Counts are None only when a job
        did not complete, which is reported through PartialFailure.

        Raises:
            PartialFailure: one or more jobs failed; carries partial counts
        """
        log = ctx.logger
        queries = list(queries)
        graphs = self._list_graphs(ctx)
        counts: dict[str, list[Optional[int]]] = {g: [None] * len(queries) for g in graphs}
        if not graphs or not queries:
            return counts

        num_jobs = len(graphs) * len(queries)
        jobs: "queue.Queue[QualifyJob]" = queue.Queue(maxsize=num_jobs)
        for graph in graphs:
            for index, query in enumerate(queries):
                jobs.put_nowait(QualifyJob(graph=graph, index=index, query=query))

        num_workers = min(self.workers, num_jobs)
        log.info(f"Qualify {len(queries)} queries across {len(graphs)} graphs with {num_workers} workers")

        errors: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="qualify") as executor:
            futures = [executor.submit(self._work, ctx, jobs) for _ in range(num_workers)]
            for future in as_completed(futures):
                report = future.result()
                for job, count in report.counts:
                    counts[job.graph][job.index] = count
                if report.error is not None:
                    errors.append(report.error)

        if errors:
            raise PartialFailure(counts, errors)
        return counts
