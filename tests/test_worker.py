import logging
import threading
import time

from landing.errors import ProviderTimeout, QueueError
from landing.pipeline import GenerationPipeline
from landing.taskqueue import ACTIVE, COMPLETED, DELAYED, FAILED, LEASE_EXPIRED, WAITING, MemoryTaskQueue
from landing.sessions import SessionStore
from landing.worker import Worker

from conftest import ScriptedLLM


def _setup(session_store, artifact_store, llm, queue=None):
    queue = queue or MemoryTaskQueue(attempts=3, backoff_seconds=0)
    pipeline = GenerationPipeline(llm, artifact_store, session_store)
    return queue, Worker(queue, pipeline, concurrency=2, poll_timeout=0.05)


def _file_store(tmp_path):
    # file-backed so the pool threads and the test thread get their own connections
    store = SessionStore(f"sqlite:///{tmp_path / 'sessions.db'}")
    store.init()
    return store


def _wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _submit(session_store, queue, sid, brief="Corporate law"):
    payload = {"brief": brief, "page_type": "invest", "model": "gpt-4o-mini"}
    session_store.create(sid, payload)
    queue.enqueue(sid, payload)


def test_drain_completes_job(session_store, artifact_store):
    queue, worker = _setup(session_store, artifact_store, ScriptedLLM())
    _submit(session_store, queue, "s-1")
    assert worker.drain() == 1
    assert session_store.get("s-1")["status"] == "completed"
    assert queue.get_job("s-1").state == COMPLETED


def test_failures_are_retried_by_queue(session_store, artifact_store):
    llm = ScriptedLLM(ProviderTimeout(), '{"hero": {"title": "ok"}}')
    queue, worker = _setup(session_store, artifact_store, llm)
    _submit(session_store, queue, "s-1")
    worker.drain()
    s = session_store.get("s-1")
    assert s["status"] == "completed"
    assert s["error"] is None
    assert queue.get_job("s-1").attempts_made == 2


def test_exhausted_attempts_leave_session_failed(session_store, artifact_store):
    queue, worker = _setup(session_store, artifact_store, ScriptedLLM("garbage"))
    _submit(session_store, queue, "s-1")
    assert worker.drain() == 3
    assert session_store.get("s-1")["status"] == "failed"
    assert queue.get_job("s-1").state == FAILED


def test_invalid_payload_is_not_retried(session_store, artifact_store):
    queue, worker = _setup(session_store, artifact_store, ScriptedLLM())
    session_store.create("s-1", {"brief": ""})
    queue.enqueue("s-1", {"brief": ""})
    assert worker.drain() == 1
    job = queue.get_job("s-1")
    assert job.state == FAILED
    assert job.error == "brief is required"
    s = session_store.get("s-1")
    assert s["status"] == "failed"
    assert s["error"] == "brief is required"


def test_expired_lease_parks_job_and_fails_session(session_store, artifact_store):
    queue = MemoryTaskQueue(attempts=1, backoff_seconds=0, lease_seconds=0)
    _, worker = _setup(session_store, artifact_store, ScriptedLLM(), queue=queue)
    _submit(session_store, queue, "s-1")
    # claimed by a worker that died mid-run
    queue.dequeue(timeout=0)
    session_store.mark_processing("s-1")
    assert worker.drain() == 0
    s = session_store.get("s-1")
    assert s["status"] == "failed"
    assert s["error"] == LEASE_EXPIRED
    assert queue.get_job("s-1").state == FAILED


def test_expired_lease_is_redelivered(session_store, artifact_store):
    queue = MemoryTaskQueue(attempts=3, backoff_seconds=0, lease_seconds=0)
    _, worker = _setup(session_store, artifact_store, ScriptedLLM(), queue=queue)
    _submit(session_store, queue, "s-1")
    queue.dequeue(timeout=0)
    session_store.mark_processing("s-1")
    assert worker.drain() == 1
    assert session_store.get("s-1")["status"] == "completed"
    assert queue.get_job("s-1").attempts_made == 2


def test_run_forever_processes_until_stopped(tmp_path, artifact_store):
    session_store = _file_store(tmp_path)
    queue, worker = _setup(session_store, artifact_store, ScriptedLLM())
    t = threading.Thread(target=worker.run_forever, daemon=True)
    t.start()
    for i in range(3):
        _submit(session_store, queue, f"s-{i}")
    deadline = time.time() + 5
    while time.time() < deadline:
        if all(session_store.get(f"s-{i}")["status"] == "completed" for i in range(3)):
            break
        time.sleep(0.02)
    worker.stop()
    t.join(timeout=5)
    assert not t.is_alive()
    assert [session_store.get(f"s-{i}")["status"] for i in range(3)] == ["completed"] * 3
    session_store.close()


class _DenyOnce:
    def __init__(self):
        self.calls = 0

    def check_and_increment(self, bucket, key):
        self.calls += 1
        if self.calls == 1:
            return False, 0, int(time.time())
        return True, 5, int(time.time()) + 60


def test_admit_waits_for_rate_limiter(session_store, artifact_store):
    _, worker = _setup(session_store, artifact_store, ScriptedLLM())
    worker.rate_limiter = _DenyOnce()
    assert worker._admit() is True
    assert worker.rate_limiter.calls == 2


def test_admit_gives_up_when_stopped(session_store, artifact_store):
    _, worker = _setup(session_store, artifact_store, ScriptedLLM())
    worker.rate_limiter = _DenyOnce()
    worker.stop()
    assert worker._admit() is False


class _GatedLLM(ScriptedLLM):
    """Blocks every call until the gate opens and records peak parallelism."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()
        self.lock = threading.Lock()
        self.running = 0
        self.peak = 0

    def complete(self, prompt, model):
        with self.lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            self.gate.wait(5)
            return super().complete(prompt, model)
        finally:
            with self.lock:
                self.running -= 1


def test_run_forever_caps_concurrency(tmp_path, artifact_store):
    session_store = _file_store(tmp_path)
    llm = _GatedLLM()
    queue, worker = _setup(session_store, artifact_store, llm)
    for i in range(5):
        _submit(session_store, queue, f"s-{i}")
    t = threading.Thread(target=worker.run_forever, daemon=True)
    t.start()
    try:
        assert _wait_for(lambda: llm.running == 2)
        time.sleep(0.2)
        assert llm.running == 2
        assert queue.job_counts()[WAITING] == 3
        llm.gate.set()
        assert _wait_for(lambda: all(session_store.get(f"s-{i}")["status"] == "completed" for i in range(5)))
    finally:
        llm.gate.set()
        worker.stop()
        t.join(timeout=5)
    assert llm.peak == 2
    session_store.close()


class _AllowFirst:
    def __init__(self, n):
        self.n = n
        self.calls = 0

    def check_and_increment(self, bucket, key):
        self.calls += 1
        reset_ts = int(time.time()) + 60
        if self.calls <= self.n:
            return True, self.n - self.calls, reset_ts
        return False, 0, reset_ts


def test_run_forever_holds_jobs_back_when_rate_limited(tmp_path, artifact_store):
    session_store = _file_store(tmp_path)
    llm = ScriptedLLM()
    queue, worker = _setup(session_store, artifact_store, llm)
    worker.rate_limiter = _AllowFirst(1)
    for i in range(3):
        _submit(session_store, queue, f"s-{i}")
    t = threading.Thread(target=worker.run_forever, daemon=True)
    t.start()
    assert _wait_for(lambda: session_store.get("s-0")["status"] == "completed")
    time.sleep(0.2)
    assert len(llm.calls) == 1
    assert session_store.get("s-1")["status"] == "pending"
    assert session_store.get("s-2")["status"] == "pending"
    worker.stop()
    t.join(timeout=5)
    assert not t.is_alive()
    # the job held at admission goes back to the queue as a failed attempt
    held = queue.get_job("s-1")
    assert held.state == DELAYED
    assert held.error == "worker stopped before start"
    assert queue.get_job("s-2").state == WAITING
    assert session_store.get("s-1")["status"] == "pending"
    session_store.close()


class _CompleteFails(MemoryTaskQueue):
    def complete(self, job):
        raise QueueError("task queue unavailable: connection reset")


def test_run_forever_logs_crashed_handler(tmp_path, artifact_store, caplog):
    caplog.set_level(logging.ERROR, logger="landing.worker")
    session_store = _file_store(tmp_path)
    queue = _CompleteFails(backoff_seconds=0)
    _, worker = _setup(session_store, artifact_store, ScriptedLLM(), queue=queue)
    _submit(session_store, queue, "s-0")
    t = threading.Thread(target=worker.run_forever, daemon=True)
    t.start()
    assert _wait_for(lambda: "handler crashed" in caplog.text)
    worker.stop()
    t.join(timeout=5)
    assert queue.get_job("s-0").state == ACTIVE
    session_store.close()
