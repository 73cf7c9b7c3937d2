import asyncio

import pytest

from autoscan.config import WatchBudget
from autoscan.exceptions import MalformedPayloadError, UnknownToolError, WatchConflictError
from autoscan.observers import ScanStateBoard
from autoscan.records import JobStatus
from autoscan.watcher import CompletionWatcher, WatchDeadline, degraded_status


@pytest.mark.asyncio
async def test_completed_on_first_poll_resolves_within_one_interval(clock, backend, make_scan):
    backend.script("amass", [make_scan("completed", scan_id="a-1")])
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("amass", "t-1"))

    assert record.status == "completed"
    assert record.id == "a-1"
    assert record.synthetic is False
    assert clock.monotonic() == 5.0
    assert len(backend.calls("list", "amass")) == 1


@pytest.mark.asyncio
async def test_pending_then_completed_resolves_at_second_poll(clock, backend, make_scan):
    backend.script(
        "subfinder",
        [make_scan("pending", scan_id="s-1")],
        [make_scan("completed", scan_id="s-1")],
    )
    board = ScanStateBoard()
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("subfinder", "t-1", observer=board))

    assert record.status == "completed"
    assert clock.monotonic() == 10.0
    assert board.status_history == [("subfinder", "pending"), ("subfinder", "completed")]
    assert board.is_running("subfinder") is False


@pytest.mark.asyncio
async def test_processing_is_not_terminal_and_costs_one_more_poll(clock, backend, make_scan):
    backend.script(
        "httpx",
        [make_scan("processing", scan_id="h-1")],
        [make_scan("success", scan_id="h-1")],
    )
    board = ScanStateBoard()
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("httpx", "t-1", observer=board))

    assert record.status == "success"
    assert len(backend.calls("list", "httpx")) == 2
    assert clock.monotonic() == 10.0
    assert ("httpx", "processing") in board.status_history


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["completed", "success", "failed", "error"])
async def test_every_backend_terminal_status_resolves(clock, backend, make_scan, status):
    backend.script("gau", [make_scan(status)])
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("gau", "t-1"))

    assert record.status == status
    assert record.synthetic is False


@pytest.mark.asyncio
async def test_eleven_http_errors_short_circuit_with_error(clock, backend, make_http_error):
    backend.script("ctl", make_http_error(500))
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("ctl", "t-1"))

    assert record.status == JobStatus.ERROR
    assert record.synthetic is True
    assert len(backend.calls("list", "ctl")) == 11
    assert clock.monotonic() == 55.0
    assert clock.monotonic() < WatchBudget().soft_timeout_s


@pytest.mark.asyncio
async def test_ten_errors_are_tolerated(clock, backend, make_http_error, make_scan):
    backend.script("ctl", *([make_http_error()] * 10), [make_scan("completed")])
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("ctl", "t-1"))

    assert record.status == "completed"
    assert len(backend.calls("list", "ctl")) == 11


@pytest.mark.asyncio
async def test_successful_poll_resets_failure_streak(clock, backend, make_http_error, make_scan):
    backend.script(
        "ctl",
        *([make_http_error()] * 10),
        [make_scan("pending")],
        *([make_http_error()] * 10),
        [make_scan("completed")],
    )
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("ctl", "t-1"))

    assert record.status == "completed"
    assert len(backend.calls("list", "ctl")) == 22


@pytest.mark.asyncio
async def test_empty_lists_degrade_to_no_scans(clock, backend):
    backend.script("gospider", [])
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("gospider", "t-1"))

    assert record.status == JobStatus.NO_SCANS
    assert clock.monotonic() == 55.0


@pytest.mark.asyncio
async def test_malformed_payloads_degrade_to_persistent_error(clock, backend):
    backend.script("gospider", {"unexpected": True})
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("gospider", "t-1"))

    assert record.status == JobStatus.PERSISTENT_ERROR


def test_degraded_status_labels_mixed_streaks():
    assert degraded_status(["transport"] * 3) == JobStatus.ERROR
    assert degraded_status(["empty"] * 3) == JobStatus.NO_SCANS
    assert degraded_status(["transport", "empty"]) == JobStatus.PERSISTENT_ERROR
    assert degraded_status(["malformed"]) == JobStatus.PERSISTENT_ERROR


@pytest.mark.asyncio
async def test_pending_for_sixteen_minutes_hits_soft_timeout(clock, backend, make_scan):
    backend.script("shuffledns", [make_scan("pending", scan_id="sd-1")])
    board = ScanStateBoard()
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("shuffledns", "t-1", observer=board))

    assert record.status == JobStatus.TIMEOUT
    assert record.id == "sd-1"
    assert clock.monotonic() == 600.0
    assert board.latest_status("shuffledns") == JobStatus.TIMEOUT
    assert board.is_running("shuffledns") is False


@pytest.mark.asyncio
async def test_hanging_fetch_is_cut_by_hard_timeout(clock, backend):
    never = asyncio.Event()

    async def hang():
        await never.wait()

    backend.script("cewl", hang)
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("cewl", "t-1"))

    assert record.status == JobStatus.HARD_TIMEOUT
    assert clock.monotonic() == 900.0


@pytest.mark.asyncio
async def test_poll_loop_ignoring_cancellation_hits_absolute_backstop(clock, backend):
    gate = asyncio.Event()
    released = False

    async def stuck():
        while not released:
            try:
                await gate.wait()
            except asyncio.CancelledError:
                continue
        raise asyncio.CancelledError()

    backend.script("metadata", stuck)
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("metadata", "t-1"))

    assert record.status == JobStatus.ABSOLUTE_TIMEOUT
    assert clock.monotonic() == 1200.0

    released = True
    gate.set()
    await clock.settle()


@pytest.mark.asyncio
@pytest.mark.parametrize("behaviour", ["completed", "pending", "errors", "empty", "hang"])
async def test_watch_always_resolves_within_absolute_timeout(clock, backend, make_scan, make_http_error, behaviour):
    never = asyncio.Event()

    async def hang():
        await never.wait()

    responses = {
        "completed": [make_scan("completed")],
        "pending": [make_scan("pending")],
        "errors": make_http_error(),
        "empty": [],
        "hang": hang,
    }
    backend.script("subdomainizer", responses[behaviour])
    budget = WatchBudget()
    watcher = CompletionWatcher(backend, budget=budget, clock=clock)

    record = await clock.run(watcher.wait_until_done("subdomainizer", "t-1"))

    assert record.is_terminal
    assert clock.monotonic() <= budget.absolute_timeout_s


@pytest.mark.asyncio
async def test_most_recent_scan_wins_and_ties_break_on_id(clock, backend, make_scan):
    backend.script(
        "amass",
        [
            make_scan("failed", scan_id="old", created_at="2024-05-01T09:00:00Z"),
            make_scan("completed", scan_id="b", created_at="2024-05-01T10:00:00Z"),
            make_scan("pending", scan_id="a", created_at="2024-05-01T10:00:00Z"),
        ],
    )
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("amass", "t-1"))

    assert record.id == "b"
    assert record.status == "completed"


@pytest.mark.asyncio
async def test_scans_wrapped_in_object_are_accepted(clock, backend, make_scan):
    backend.script("assetfinder", {"scans": [make_scan("completed")]})
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("assetfinder", "t-1"))

    assert record.status == "completed"


@pytest.mark.asyncio
async def test_status_observer_fires_only_on_change(clock, backend, make_scan):
    backend.script(
        "sublist3r",
        [make_scan("pending")],
        [make_scan("pending")],
        [make_scan("pending")],
        [make_scan("completed")],
    )
    board = ScanStateBoard()
    watcher = CompletionWatcher(backend, clock=clock)

    await clock.run(watcher.wait_until_done("sublist3r", "t-1", observer=board))

    assert board.status_history == [("sublist3r", "pending"), ("sublist3r", "completed")]


@pytest.mark.asyncio
async def test_unknown_tool_and_missing_target_are_rejected(backend, clock):
    watcher = CompletionWatcher(backend, clock=clock)

    with pytest.raises(UnknownToolError):
        await watcher.wait_until_done("nmap", "t-1")
    with pytest.raises(ValueError):
        await watcher.wait_until_done("amass", "")


@pytest.mark.asyncio
async def test_second_watch_of_same_scan_is_rejected(clock, backend, make_scan):
    backend.script("amass", [make_scan("pending")], [make_scan("completed")])
    watcher = CompletionWatcher(backend, clock=clock)

    first = asyncio.ensure_future(watcher.wait_until_done("amass", "t-1"))
    await asyncio.sleep(0)
    assert ("amass", "t-1") in watcher.active_watches

    with pytest.raises(WatchConflictError):
        await watcher.wait_until_done("amass", "t-1")

    record = await clock.run(first)
    assert record.status == "completed"
    assert watcher.active_watches == set()


@pytest.mark.asyncio
async def test_malformed_error_counts_like_other_failures(clock, backend, make_scan):
    backend.script("gau", MalformedPayloadError("not json"), [make_scan("completed")])
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("gau", "t-1"))

    assert record.status == "completed"


def test_deadline_thresholds_share_one_start(clock):
    deadline = WatchDeadline.start(WatchBudget(), clock)

    assert deadline.remaining("soft") == 600.0
    assert deadline.remaining("hard") == 900.0
    assert deadline.remaining("absolute") == 1200.0
    assert deadline.reached("soft") is False


@pytest.mark.asyncio
async def test_mixed_failure_streak_degrades_to_persistent_error(clock, backend, transport_error):
    backend.script("subfinder", *([transport_error(), []] * 5), transport_error())
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("subfinder", "t-1"))

    assert record.status == JobStatus.PERSISTENT_ERROR
    assert len(backend.calls("list", "subfinder")) == 11


@pytest.mark.asyncio
async def test_unexpected_errors_degrade_to_persistent_error(clock, backend):
    backend.script("gau", KeyError("scans"))
    watcher = CompletionWatcher(backend, clock=clock)

    record = await clock.run(watcher.wait_until_done("gau", "t-1"))

    assert record.status == JobStatus.PERSISTENT_ERROR
    assert len(backend.calls("list", "gau")) == 11
