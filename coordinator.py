"""
Shard coordinator: runs one solve across parallel workers.

FLOW FOR ONE REQUEST:
1. Validate the configuration (fails fast, no worker started)
2. Partition the quantity axis into contiguous shards, one per worker
3. Look the configuration fingerprint up in the result cache; a hit
   answers the request immediately
4. Start one worker per shard. Workers share nothing; each owns its
   decimal context, dedup set, progress counter and cancel token, and
   talks back only through one-way messages on a single outbox queue
5. Relay progress (mean of shard fractions) and partial result batches
6. When every shard has reported its final list: concatenate, deduplicate
   again (shards may meet the same triple near a boundary), rank, truncate
7. Optionally re-verify the answer independently, then store it in the
   cache (best effort)

A shard failure aborts the whole request. Cancellation is cooperative and
silent: once cancel() returns, neither `result` nor `error` is emitted
for that request.
"""

import multiprocessing
import os
import queue
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config import MAX_COMBINATIONS, SolverConfig, validate_config
from errors import CacheFault, CancellationSignal, SolverError, ValidationError, WorkerFault
from planner import STRATEGY_SINGLE, plan_search
from precision import axis_count, axis_value
from protocol import (
    CancelRequest,
    ErrorMessage,
    PartialResultMessage,
    ProgressMessage,
    ResultMessage,
    StartRequest,
    request_from_payload,
)
from result_cache import ResultCache, config_fingerprint
from solver import CancelToken, SolverResult, dedupe_results, rank_results, run_shard

# Used when the host does not report its CPU count.
DEFAULT_WORKERS = 4

# Results per partial_result message.
PARTIAL_BATCH_SIZE = 50

# Outbox poll period, seconds.
POLL_INTERVAL = 0.05

# Empty polls after a worker exits before its missing final list is a fault.
DEAD_WORKER_POLLS = 3

# Time given to workers to unwind after cancel/fault before terminate().
STOP_GRACE_SEC = 5.0

Emit = Callable[[Any], None]


def default_workers() -> int:
    return os.cpu_count() or DEFAULT_WORKERS


def partition_quantity(config: SolverConfig, shards: int) -> List[SolverConfig]:
    """
    Split the quantity grid into at most `shards` contiguous, grid-aligned,
    non-overlapping sub-ranges. Never more shards than grid points.
    """
    count = axis_count(config.quantity_min, config.quantity_max, config.quantity_step)
    n = max(1, min(int(shards), count))
    if n == 1:
        return [config]
    out = []
    for i in range(n):
        start = i * count // n
        stop = (i + 1) * count // n
        lo = axis_value(config.quantity_min, config.quantity_step, start)
        hi = axis_value(config.quantity_min, config.quantity_step, stop - 1)
        out.append(config.with_quantity_range(lo, hi))
    return out


def merge_shard_results(shard_results: List[List[SolverResult]], top_n: int) -> List[SolverResult]:
    """Concatenate in shard order, deduplicate, rank, truncate."""
    merged: List[SolverResult] = []
    for results in shard_results:
        merged.extend(results)
    return rank_results(dedupe_results(merged), top_n)


class _Batcher:
    """Groups accepted results into partial_result messages."""

    def __init__(self, send: Callable[[PartialResultMessage], None], size: int = PARTIAL_BATCH_SIZE):
        self.send = send
        self.size = size
        self.pending: List[SolverResult] = []

    def add(self, result: SolverResult):
        self.pending.append(result)
        if len(self.pending) >= self.size:
            self.flush()

    def flush(self):
        if self.pending:
            self.send(PartialResultMessage(list(self.pending)))
            self.pending = []


def shard_worker_main(shard_id: int, config: SolverConfig, outbox, cancel_event,
                      batch_size: int = PARTIAL_BATCH_SIZE):
    """
    Worker process entry point.

    Posts (shard_id, message) tuples: progress, partial_result, then
    exactly one result or error. A cancelled walk posts nothing more.
    """
    cancel = CancelToken(cancel_event)
    started = time.perf_counter()
    batcher = _Batcher(lambda msg: outbox.put((shard_id, msg)), batch_size)

    def on_progress(fraction: float, estimate: int):
        outbox.put((shard_id, ProgressMessage(fraction, estimate)))

    try:
        results = run_shard(config, cancel, on_progress, batcher.add)
    except CancellationSignal:
        return
    except Exception as exc:
        if not cancel.cancelled:
            outbox.put((shard_id, ErrorMessage(f"{type(exc).__name__}: {exc}")))
        return

    if cancel.cancelled:
        return
    batcher.flush()
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    outbox.put((shard_id, ResultMessage(results, elapsed_ms)))


class SolveCoordinator:
    """Coordinates sharded solves, the result cache and the message protocol."""

    def __init__(
        self,
        cache: Optional[ResultCache] = None,
        workers: Optional[int] = None,
        emit: Optional[Emit] = None,
        verify: bool = False,
        use_processes: bool = True,
        start_method: str = "spawn",
        max_combinations: int = MAX_COMBINATIONS,
        log_dir: Optional[Path] = None,
        verbose: bool = False,
        worker_target: Callable = shard_worker_main,
    ):
        self.cache = cache
        self.workers = max(1, int(workers or default_workers()))
        self.emit = emit or (lambda message: None)
        self.verify = verify
        self.use_processes = use_processes
        self.start_method = start_method
        self.max_combinations = max_combinations
        self.verbose = verbose
        # Process entry point; must be importable by name under spawn.
        self.worker_target = worker_target

        self.log_file: Optional[Path] = None
        if log_dir is not None:
            log_dir = Path(log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = log_dir / f"solver_{time.strftime('%Y%m%d_%H%M%S')}.log"

        self.shards_started = 0
        self._lock = threading.RLock()
        self._token: Optional[CancelToken] = None
        self._thread: Optional[threading.Thread] = None

    def log(self, msg: str):
        """Log to file and console."""
        timestamp = time.strftime("%H:%M:%S")
        line = f"[{timestamp}] {msg}"
        if self.verbose:
            print(line, flush=True)
        if self.log_file is not None:
            with open(self.log_file, "a") as f:
                f.write(line + "\n")

    # --- message-driven interface ---

    def handle(self, payload: Dict[str, Any]):
        """Dispatch an inbound {"type": "start"|"cancel", ...} payload."""
        try:
            request = request_from_payload(payload)
        except ValidationError as exc:
            self.emit(ErrorMessage(str(exc)))
            return
        if isinstance(request, CancelRequest):
            self.cancel()
            return
        if isinstance(request, StartRequest):
            try:
                self.start(request.config)
            except ValidationError as exc:
                self.emit(ErrorMessage(str(exc)))

    def start(self, config: SolverConfig):
        """
        Begin a solve in the background and return immediately.

        Raises ValidationError / SearchSpaceTooLargeError synchronously.
        A request already in flight is cancelled first.
        """
        validate_config(config, self.max_combinations)
        token = CancelToken()
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = token
            thread = threading.Thread(target=self._run, args=(config, token), daemon=True)
            self._thread = thread
            thread.start()

    def cancel(self):
        """Cancel the request in flight, if any. Nothing more is emitted for it."""
        with self._lock:
            if self._token is not None and not self._token.cancelled:
                self._token.cancel()
                self.log("Cancellation requested.")

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background request. True when it has finished."""
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def solve(self, config: SolverConfig, cancel: Optional[CancelToken] = None) -> List[SolverResult]:
        """
        Blocking solve on the calling thread.

        Progress and partial results still go to `emit`. Raises
        ValidationError, WorkerFault, or CancellationSignal if `cancel` fires.
        """
        validate_config(config, self.max_combinations)
        return self._execute(config, cancel or CancelToken())

    # --- internals ---

    def _deliver(self, token: CancelToken, message) -> bool:
        with self._lock:
            if token.cancelled:
                return False
            self.emit(message)
            return True

    def _run(self, config: SolverConfig, token: CancelToken):
        started = time.perf_counter()
        try:
            results = self._execute(config, token)
        except CancellationSignal:
            self.log("Request cancelled; nothing emitted.")
            return
        except SolverError as exc:
            self.log(f"⚠ Request failed: {exc}")
            self._deliver(token, ErrorMessage(str(exc)))
            return
        except Exception as exc:
            self.log(f"⚠ Unexpected coordinator error: {exc!r}")
            self._deliver(token, ErrorMessage(f"{type(exc).__name__}: {exc}"))
            return
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._deliver(token, ResultMessage(results, elapsed_ms))

    def _execute(self, config: SolverConfig, token: CancelToken) -> List[SolverResult]:
        plan = plan_search(config)
        if plan.strategy == STRATEGY_SINGLE:
            shard_configs = [config]
        else:
            shard_configs = partition_quantity(config, self.workers)
        n = len(shard_configs)
        self.log(f"[PLANNING] strategy={plan.strategy} solve_for={plan.solve_for} "
                 f"estimate={plan.estimate:,} shards={n}")

        fingerprint = config_fingerprint(config, n)
        cached = self._cache_get(fingerprint)
        if cached is not None:
            self.log(f"  Cache hit {fingerprint[:12]}: {len(cached)} results.")
            return cached
        if self.cache is not None:
            self.log(f"  Cache miss {fingerprint[:12]}.")

        token.check()
        if self.use_processes and n > 1:
            shard_results = self._run_processes(shard_configs, token)
        else:
            shard_results = self._run_sequential(shard_configs, token)
        token.check()

        results = merge_shard_results(shard_results, config.top_n)
        self.log(f"  Merged {sum(len(r) for r in shard_results)} shard results "
                 f"into {len(results)}.")

        if self.verify:
            from validator import ResultValidator

            report = ResultValidator().validate(results, config)
            if report.is_valid:
                self.log(f"  ✓ Independent verification passed ({report.checked} results).")
            else:
                self.log(f"  ⚠ Independent verification found {len(report.violations)} violations:")
                for violation in report.violations:
                    self.log(f"    - {violation}")

        if results:
            self._cache_put(fingerprint, results, config)
        return results

    def _cache_get(self, fingerprint: str) -> Optional[List[SolverResult]]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(fingerprint)
        except CacheFault as exc:
            self.log(f"  ⚠ Cache read failed, treating as miss: {exc}")
            return None

    def _cache_put(self, fingerprint: str, results: List[SolverResult], config: SolverConfig):
        if self.cache is None:
            return
        try:
            self.cache.put(fingerprint, results, config)
            self.log(f"  Cached {len(results)} results under {fingerprint[:12]}.")
        except CacheFault as exc:
            self.log(f"  ⚠ Cache write failed, ignored: {exc}")

    def _run_sequential(self, shard_configs: List[SolverConfig], token: CancelToken) -> List[List[SolverResult]]:
        n = len(shard_configs)
        progress = [0.0] * n
        out: List[List[SolverResult]] = []
        batcher = _Batcher(lambda msg: self._deliver(token, msg))
        for shard_id, shard_config in enumerate(shard_configs):

            def on_progress(fraction: float, estimate: int, shard_id=shard_id):
                progress[shard_id] = fraction
                self._deliver(token, ProgressMessage(sum(progress) / n, estimate * n))

            self.shards_started += 1
            try:
                results = run_shard(shard_config, token, on_progress, batcher.add)
            except CancellationSignal:
                raise
            except Exception as exc:
                raise WorkerFault(shard_id, f"{type(exc).__name__}: {exc}") from exc
            batcher.flush()
            out.append(results)
        return out

    def _run_processes(self, shard_configs: List[SolverConfig], token: CancelToken) -> List[List[SolverResult]]:
        ctx = multiprocessing.get_context(self.start_method)
        outbox = ctx.Queue()
        cancel_event = ctx.Event()
        n = len(shard_configs)
        procs = []
        for shard_id, shard_config in enumerate(shard_configs):
            proc = ctx.Process(
                target=self.worker_target,
                args=(shard_id, shard_config, outbox, cancel_event),
                daemon=True,
            )
            proc.start()
            procs.append(proc)
            self.shards_started += 1
            self.log(f"  START shard {shard_id}: quantity "
                     f"{shard_config.quantity_min}..{shard_config.quantity_max}")

        progress = [0.0] * n
        finals: Dict[int, List[SolverResult]] = {}
        dead_polls = [0] * n
        try:
            while len(finals) < n:
                token.check()
                try:
                    shard_id, message = outbox.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    for shard_id, proc in enumerate(procs):
                        if shard_id in finals or proc.exitcode is None:
                            continue
                        dead_polls[shard_id] += 1
                        if dead_polls[shard_id] >= DEAD_WORKER_POLLS:
                            raise WorkerFault(shard_id, f"worker exited (code {proc.exitcode}) without a result")
                    continue

                if isinstance(message, ProgressMessage):
                    progress[shard_id] = message.progress
                    self._deliver(token, ProgressMessage(sum(progress) / n, message.estimate * n))
                elif isinstance(message, PartialResultMessage):
                    self._deliver(token, message)
                elif isinstance(message, ResultMessage):
                    finals[shard_id] = message.results
                    progress[shard_id] = 1.0
                    self.log(f"  DONE  shard {shard_id}: {len(message.results)} results "
                             f"in {message.elapsed:0.1f}ms")
                elif isinstance(message, ErrorMessage):
                    raise WorkerFault(shard_id, message.message)
        finally:
            cancel_event.set()
            self._stop_workers(procs, outbox)

        return [finals[shard_id] for shard_id in range(n)]

    @staticmethod
    def _stop_workers(procs, outbox, grace: float = STOP_GRACE_SEC):
        deadline = time.perf_counter() + grace
        while any(p.is_alive() for p in procs) and time.perf_counter() < deadline:
            # Drain so workers blocked on a full pipe can exit.
            try:
                while True:
                    outbox.get_nowait()
            except queue.Empty:
                pass
            for p in procs:
                p.join(timeout=POLL_INTERVAL)
        for p in procs:
            if p.is_alive():
                p.terminate()
                p.join(timeout=1.0)
            if p.is_alive():
                p.kill()
                p.join(timeout=1.0)
        outbox.close()
