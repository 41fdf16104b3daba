"""
ransac.py - Concurrent dominant-plane extraction

One round runs a producer thread (hypothesis generation), a pool of scoring
workers (optionally fanning out over point ranges) and a reducer on the
calling thread, connected by queues. Rounds are chained by removing the
winning plane's support from the cloud.
"""

import logging
import math
import os
import queue
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from primitives import (
    DegenerateSampleError,
    EmptyCloudError,
    InvalidParameterError,
    Plane3D,
    Point3D,
    PointCloud,
    plane_from_points,
)

logger = logging.getLogger(__name__)

DEFAULT_NUM_DOMINANT_PLANES = 3
DEFAULT_MAX_SAMPLE_RETRIES = 10
DEFAULT_PARTITION_SIZE = 50_000
DEFAULT_QUEUE_SIZE = 64

# Poll interval for blocking queue puts that must notice cancellation.
_PUT_POLL_SECONDS = 0.05

_STOP = object()


# =============================================================================
# Iteration count
# =============================================================================

def estimate_iterations(
    confidence: float,
    inlier_fraction: float,
    max_iterations: Optional[int] = None,
) -> int:
    """
    Number of random trials needed to draw an all-inlier triple.

    n = ceil(ln(1 - confidence) / ln(1 - inlier_fraction^3))

    Args:
        confidence: Desired probability that at least one trial succeeds
        inlier_fraction: Expected fraction of points on the plane
        max_iterations: Optional upper bound on the result

    Returns:
        Non-negative trial budget

    Raises:
        InvalidParameterError: For NaN inputs or a non-positive inlier fraction
    """
    confidence = float(confidence)
    inlier_fraction = float(inlier_fraction)
    if math.isnan(confidence) or math.isnan(inlier_fraction):
        raise InvalidParameterError("confidence and inlier_fraction must be numbers")
    if inlier_fraction <= 0:
        raise InvalidParameterError(f"inlier_fraction must be positive, got {inlier_fraction}")

    if confidence >= 1 or inlier_fraction >= 1:
        n = 1
    elif confidence <= 0:
        n = 0
    else:
        denominator = math.log1p(-inlier_fraction ** 3)
        if denominator == 0:
            raise InvalidParameterError(
                f"inlier_fraction {inlier_fraction} is too small to estimate a trial count"
            )
        n = math.ceil(math.log1p(-confidence) / denominator)

    if max_iterations is not None:
        n = min(n, int(max_iterations))
    return n


# =============================================================================
# Cancellation
# =============================================================================

class CancelToken:
    """
    Cancellation signal shared by a producer and whoever drives it.

    Becomes cancelled on cancel() or, when a timeout is given, once the
    deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + float(timeout)

    def cancel(self) -> None:
        self._event.set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.timed_out


# =============================================================================
# Data
# =============================================================================

@dataclass(frozen=True)
class Hypothesis:
    """A plane drawn from one random triple."""
    index: int
    plane: Plane3D
    sample: Tuple[Point3D, Point3D, Point3D]


@dataclass
class ScoredPlane:
    """A plane hypothesis with its supporting points."""
    plane: Optional[Plane3D]
    support: PointCloud
    support_size: int
    index: int = -1

    @classmethod
    def not_found(cls) -> "ScoredPlane":
        return cls(plane=None, support=PointCloud.empty(), support_size=0, index=-1)

    @property
    def found(self) -> bool:
        return self.plane is not None


@dataclass
class DominantPlanesResult:
    """Planes extracted round by round and the points left over."""
    planes: List[ScoredPlane]
    residual: PointCloud
    original_size: int
    num_trials: int = 0

    @property
    def total_support(self) -> int:
        return sum(p.support_size for p in self.planes)

    @property
    def is_consistent(self) -> bool:
        return self.total_support + len(self.residual) == self.original_size


@dataclass
class RansacConfig:
    """
    Parameters for a segmentation run.

    Attributes:
        confidence: Probability of drawing at least one all-inlier sample
        inlier_fraction: Expected fraction of points on a dominant plane
        eps: Inlier distance tolerance
        num_planes: Number of rounds (planes) to extract
        max_iterations: Optional cap on the per-round trial budget
        max_retries: Extra draws allowed per slot after a degenerate sample
        num_workers: Scoring workers (defaults to min(4, cpu count))
        partition_size: Point count above which scoring fans out over ranges
        queue_size: Capacity of the hypothesis queue
        seed: Seed for the random generator
        timeout: Deadline in seconds for the whole run
    """
    confidence: float = 0.99
    inlier_fraction: float = 0.3
    eps: float = 0.01
    num_planes: int = DEFAULT_NUM_DOMINANT_PLANES
    max_iterations: Optional[int] = None
    max_retries: int = DEFAULT_MAX_SAMPLE_RETRIES
    num_workers: Optional[int] = None
    partition_size: int = DEFAULT_PARTITION_SIZE
    queue_size: int = DEFAULT_QUEUE_SIZE
    seed: Optional[int] = None
    timeout: Optional[float] = None

    def validate(self) -> None:
        """Raise InvalidParameterError for any out-of-range value."""
        if not 0.0 < self.confidence < 1.0:
            raise InvalidParameterError(f"confidence must be in (0, 1), got {self.confidence}")
        if not 0.0 < self.inlier_fraction < 1.0:
            raise InvalidParameterError(
                f"inlier_fraction must be in (0, 1), got {self.inlier_fraction}"
            )
        if not math.isfinite(self.eps) or self.eps <= 0:
            raise InvalidParameterError(f"eps must be positive, got {self.eps}")
        if self.num_planes <= 0:
            raise InvalidParameterError(f"num_planes must be positive, got {self.num_planes}")
        if self.max_iterations is not None and self.max_iterations < 0:
            raise InvalidParameterError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.max_retries < 0:
            raise InvalidParameterError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.num_workers is not None and self.num_workers <= 0:
            raise InvalidParameterError(f"num_workers must be positive, got {self.num_workers}")
        if self.partition_size <= 0:
            raise InvalidParameterError(f"partition_size must be positive, got {self.partition_size}")
        if self.queue_size <= 0:
            raise InvalidParameterError(f"queue_size must be positive, got {self.queue_size}")
        if self.timeout is not None and self.timeout < 0:
            raise InvalidParameterError(f"timeout must be >= 0, got {self.timeout}")

    def num_trials(self) -> int:
        return estimate_iterations(self.confidence, self.inlier_fraction, self.max_iterations)

    def resolved_workers(self) -> int:
        if self.num_workers is not None:
            return int(self.num_workers)
        return max(1, min(4, os.cpu_count() or 1))


# =============================================================================
# Hypothesis generation
# =============================================================================

class HypothesisGenerator:
    """
    Yields up to num_trials plane hypotheses from random triples.

    Degenerate triples are redrawn up to max_retries times per slot; a slot
    that never produces a plane is skipped. Iteration stops as soon as the
    cancel token fires or the cloud turns out to be empty.
    """

    def __init__(
        self,
        cloud: PointCloud,
        num_trials: int,
        *,
        rng: Optional[np.random.Generator] = None,
        cancel_token: Optional[CancelToken] = None,
        max_retries: int = DEFAULT_MAX_SAMPLE_RETRIES,
    ):
        self.cloud = cloud
        self.num_trials = max(0, int(num_trials))
        self.rng = rng if rng is not None else np.random.default_rng()
        self.cancel_token = cancel_token if cancel_token is not None else CancelToken()
        self.max_retries = max(0, int(max_retries))
        self.emitted = 0
        self.skipped = 0
        self.redrawn = 0

    def _draw_plane(self) -> Optional[Tuple[Plane3D, Tuple[Point3D, Point3D, Point3D]]]:
        for _ in range(self.max_retries + 1):
            if self.cancel_token.cancelled:
                return None
            sample = self.cloud.random_triple(self.rng)
            try:
                return plane_from_points(*sample), sample
            except DegenerateSampleError:
                self.redrawn += 1
                continue
        return None

    def __iter__(self) -> Iterator[Hypothesis]:
        for slot in range(self.num_trials):
            if self.cancel_token.cancelled:
                logger.debug("Hypothesis generation cancelled at slot %d/%d", slot, self.num_trials)
                return
            try:
                drawn = self._draw_plane()
            except EmptyCloudError:
                logger.debug("Cloud is empty; no hypotheses generated")
                return
            if drawn is None:
                if self.cancel_token.cancelled:
                    return
                self.skipped += 1
                continue
            plane, sample = drawn
            yield Hypothesis(index=self.emitted, plane=plane, sample=sample)
            self.emitted += 1


# =============================================================================
# Scoring
# =============================================================================

class ParallelScorer:
    """
    Collects the support of a hypothesis, splitting large clouds into point
    ranges evaluated on an executor.
    """

    def __init__(
        self,
        eps: float,
        *,
        partition_size: int = DEFAULT_PARTITION_SIZE,
        executor: Optional[Executor] = None,
    ):
        if partition_size <= 0:
            raise InvalidParameterError(f"partition_size must be positive, got {partition_size}")
        self.eps = eps
        self.partition_size = int(partition_size)
        self.executor = executor

    def partitions(self, n: int) -> List[Tuple[int, int]]:
        return [(start, min(start + self.partition_size, n)) for start in range(0, n, self.partition_size)]

    def score(self, cloud: PointCloud, hypothesis: Hypothesis) -> ScoredPlane:
        bounds = self.partitions(len(cloud))
        if self.executor is None or len(bounds) <= 1:
            mask = cloud.support_mask(hypothesis.plane, self.eps)
        else:
            futures = [
                self.executor.submit(cloud.support_mask, hypothesis.plane, self.eps, start, stop)
                for start, stop in bounds
            ]
            mask = np.concatenate([f.result() for f in futures])
        support = cloud.subset(mask)
        return ScoredPlane(
            plane=hypothesis.plane,
            support=support,
            support_size=len(support),
            index=hypothesis.index,
        )


# =============================================================================
# Reduction
# =============================================================================

class BestPlaneReducer:
    """Keeps the scored plane with the largest support; earlier index wins ties."""

    def __init__(self):
        self._best: Optional[ScoredPlane] = None
        self.observed = 0

    def observe(self, scored: ScoredPlane) -> None:
        self.observed += 1
        best = self._best
        if (
            best is None
            or scored.support_size > best.support_size
            or (scored.support_size == best.support_size and scored.index < best.index)
        ):
            self._best = scored

    def result(self) -> ScoredPlane:
        if self._best is None:
            return ScoredPlane.not_found()
        return self._best

    def consume(self, stream: Iterable[ScoredPlane]) -> ScoredPlane:
        for scored in stream:
            self.observe(scored)
        return self.result()


# =============================================================================
# One round
# =============================================================================

def _put_unless_cancelled(q: queue.Queue, item, token: CancelToken) -> bool:
    while True:
        try:
            q.put(item, timeout=_PUT_POLL_SECONDS)
            return True
        except queue.Full:
            if token.cancelled:
                return False


def find_dominant_plane(
    cloud: PointCloud,
    num_trials: int,
    eps: float,
    *,
    rng: Optional[np.random.Generator] = None,
    cancel_token: Optional[CancelToken] = None,
    num_workers: int = 1,
    partition_size: int = DEFAULT_PARTITION_SIZE,
    max_retries: int = DEFAULT_MAX_SAMPLE_RETRIES,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> ScoredPlane:
    """
    Run one sample/score/reduce cycle and return the best-supported plane.

    Args:
        cloud: Points to sample from (not modified)
        num_trials: Number of hypothesis slots
        eps: Inlier distance tolerance
        rng: Random generator; all draws happen on the producer thread
        cancel_token: Stops hypothesis production when cancelled
        num_workers: Number of concurrent scoring workers
        partition_size: Point count per scoring range
        max_retries: Redraws per slot after a degenerate sample
        queue_size: Capacity of the hypothesis queue

    Returns:
        Best ScoredPlane, or ScoredPlane.not_found() if nothing was scored
    """
    if num_workers <= 0:
        raise InvalidParameterError(f"num_workers must be positive, got {num_workers}")
    token = cancel_token if cancel_token is not None else CancelToken()
    generator = HypothesisGenerator(
        cloud, num_trials, rng=rng, cancel_token=token, max_retries=max_retries
    )
    hypotheses: queue.Queue = queue.Queue(maxsize=max(1, queue_size))
    scored: queue.Queue = queue.Queue()
    errors: List[BaseException] = []

    def produce() -> None:
        try:
            for hypothesis in generator:
                if not _put_unless_cancelled(hypotheses, hypothesis, token):
                    break
        except Exception as exc:
            errors.append(exc)
            token.cancel()
        finally:
            for _ in range(num_workers):
                hypotheses.put(_STOP)

    def score_worker(scorer: ParallelScorer) -> None:
        try:
            while True:
                item = hypotheses.get()
                if item is _STOP:
                    break
                if errors:
                    continue
                try:
                    scored.put(scorer.score(cloud, item))
                except Exception as exc:
                    errors.append(exc)
                    token.cancel()
        finally:
            scored.put(_STOP)

    fan_out = len(cloud) > partition_size
    partition_pool = (
        ThreadPoolExecutor(max_workers=os.cpu_count() or 1, thread_name_prefix="ransac-partition")
        if fan_out else None
    )
    reducer = BestPlaneReducer()
    try:
        scorer = ParallelScorer(eps, partition_size=partition_size, executor=partition_pool)
        producer = threading.Thread(target=produce, name="ransac-hypotheses", daemon=True)
        with ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="ransac-score") as pool:
            producer.start()
            for _ in range(num_workers):
                pool.submit(score_worker, scorer)
            finished = 0
            try:
                while finished < num_workers:
                    item = scored.get()
                    if item is _STOP:
                        finished += 1
                    else:
                        reducer.observe(item)
            except BaseException:
                # Interrupted while reducing: let the pipeline drain before unwinding.
                token.cancel()
                raise
        producer.join()
    finally:
        if partition_pool is not None:
            partition_pool.shutdown(wait=True)

    if errors:
        raise errors[0]

    best = reducer.result()
    logger.debug(
        "Round scored %d hypotheses (%d slots skipped)%s; best support=%d",
        reducer.observed, generator.skipped,
        " [cancelled]" if token.cancelled else "", best.support_size,
    )
    return best


# =============================================================================
# Segmentation loop
# =============================================================================

class SegmentationState(Enum):
    SAMPLING = "sampling"
    SCORING = "scoring"
    REDUCING = "reducing"
    REMOVING = "removing"
    DONE = "done"


@dataclass
class RoundEvent:
    """Progress notification passed to on_round callbacks."""
    round_index: int
    state: SegmentationState
    cloud_size: int
    plane: Optional[ScoredPlane] = None


def extract_dominant_planes(
    cloud: PointCloud,
    config: Optional[RansacConfig] = None,
    *,
    rng: Optional[np.random.Generator] = None,
    cancel_token: Optional[CancelToken] = None,
    on_round: Optional[Callable[[RoundEvent], None]] = None,
) -> DominantPlanesResult:
    """
    Peel config.num_planes dominant planes off the cloud, one per round.

    The trial budget is computed once from (confidence, inlier_fraction) and
    reused every round; rounds on clouds with fewer than 3 points get no
    trials. A round that finds nothing records ScoredPlane.not_found() and
    removes no points.

    Args:
        cloud: Input points
        config: Run parameters (defaults to RansacConfig())
        rng: Random generator (defaults to one seeded from config.seed)
        cancel_token: Shared by every round; once cancelled, remaining rounds
            return not-found immediately
        on_round: Called on every state transition

    Returns:
        DominantPlanesResult with one entry per round

    Raises:
        InvalidParameterError: Before any sampling, for bad parameters
    """
    config = config if config is not None else RansacConfig()
    config.validate()

    num_trials = config.num_trials()
    num_workers = config.resolved_workers()
    if rng is None:
        rng = np.random.default_rng(config.seed)
    if cancel_token is None:
        cancel_token = CancelToken(timeout=config.timeout)

    def notify(
        round_index: int,
        state: SegmentationState,
        size: int,
        plane: Optional[ScoredPlane] = None,
    ) -> None:
        logger.debug("Round %d: %s (%d points)", round_index, state.value, size)
        if on_round is not None:
            on_round(RoundEvent(round_index, state, size, plane))

    logger.info(
        "Extracting %d planes from %d points: %d trials/round, eps=%g, workers=%d",
        config.num_planes, len(cloud), num_trials, config.eps, num_workers,
    )

    planes: List[ScoredPlane] = []
    current = cloud
    for round_index in range(config.num_planes):
        round_trials = num_trials if len(current) >= 3 else 0
        notify(round_index, SegmentationState.SAMPLING, len(current))
        notify(round_index, SegmentationState.SCORING, len(current))
        best = find_dominant_plane(
            current,
            round_trials,
            config.eps,
            rng=rng,
            cancel_token=cancel_token,
            num_workers=num_workers,
            partition_size=config.partition_size,
            max_retries=config.max_retries,
            queue_size=config.queue_size,
        )
        notify(round_index, SegmentationState.REDUCING, len(current), best)

        if best.found:
            support, current = current.split(best.plane, config.eps)
            best = ScoredPlane(
                plane=best.plane,
                support=support,
                support_size=len(support),
                index=best.index,
            )
            logger.info(
                "Plane %d: support=%d, residual=%d, %s",
                round_index + 1, best.support_size, len(current), best.plane,
            )
        else:
            logger.info("Plane %d: no plane found (%d points remain)", round_index + 1, len(current))
        planes.append(best)
        notify(round_index, SegmentationState.REMOVING, len(current), best)

    notify(config.num_planes, SegmentationState.DONE, len(current))
    return DominantPlanesResult(
        planes=planes,
        residual=current,
        original_size=len(cloud),
        num_trials=num_trials,
    )
