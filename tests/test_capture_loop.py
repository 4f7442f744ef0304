import asyncio

from conftest import (
    SequenceRuntime,
    StaticRuntime,
    geometry_only_occlusion,
    jittered_embeddings,
    make_detection,
    uniform_frame,
)
from staffclock.enrollment.capture import CaptureConfig, CaptureFlowState, CaptureQualityGate
from staffclock.enrollment.loop import AutoCaptureLoop


def build_gate(runtime, target: int = 20) -> CaptureQualityGate:
    return CaptureQualityGate(
        runtime,
        config=CaptureConfig(target=target),
        occlusion_fn=geometry_only_occlusion,
        sharpness_fn=lambda frame, box: 3000.0,
    )


def test_run_reaches_target_and_notifies():
    gate = build_gate(SequenceRuntime(make_detection(e) for e in jittered_embeddings(5)), target=5)
    seen = []
    loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=0.0, on_transition=seen.append)

    asyncio.run(loop.run())

    assert gate.session.is_complete
    assert [t.state for t in seen][-1] == CaptureFlowState.COMPLETED
    assert len(seen) == 5


def test_async_frame_source_is_awaited():
    gate = build_gate(SequenceRuntime(make_detection(e) for e in jittered_embeddings(2)), target=2)

    async def source():
        await asyncio.sleep(0)
        return uniform_frame()

    loop = AutoCaptureLoop(gate, source, interval=0.0)
    asyncio.run(loop.run())
    assert len(gate.session) == 2


def test_tick_does_not_reenter_while_in_flight():
    runtime = StaticRuntime(make_detection(jittered_embeddings(1)[0]))
    gate = build_gate(runtime)

    async def scenario():
        release = asyncio.Event()

        async def source():
            await release.wait()
            return uniform_frame()

        loop = AutoCaptureLoop(gate, source, interval=0.0)
        first = asyncio.ensure_future(loop.tick_once())
        await asyncio.sleep(0)
        second = await loop.tick_once()
        release.set()
        return second, await first

    second, first = asyncio.run(scenario())
    assert second is None
    assert first is not None and first.accepted
    assert runtime.calls == 1


def test_cancel_stops_pending_loop():
    runtime = StaticRuntime(None)
    gate = build_gate(runtime)

    async def scenario():
        loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=0.01)
        loop.start()
        await asyncio.sleep(0.05)
        await loop.cancel()
        calls = runtime.calls
        await asyncio.sleep(0.05)
        return loop, calls

    loop, calls = asyncio.run(scenario())
    assert not loop.running
    assert calls >= 1
    assert runtime.calls == calls
    assert gate.state == CaptureFlowState.LOW_CONFIDENCE


def test_pause_keeps_samples_and_resume_continues():
    runtime = SequenceRuntime(make_detection(e) for e in jittered_embeddings(3))
    gate = build_gate(runtime, target=3)

    async def scenario():
        loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=0.005)
        await loop.tick_once()
        loop.pause()
        task = loop.start()
        await asyncio.sleep(0.03)
        paused_calls = runtime.calls
        loop.resume()
        await asyncio.wait_for(task, timeout=2.0)
        return paused_calls

    paused_calls = asyncio.run(scenario())
    assert paused_calls == 1
    assert gate.session.is_complete


def test_reset_clears_samples_and_rearms():
    runtime = SequenceRuntime(make_detection(e) for e in jittered_embeddings(4))
    gate = build_gate(runtime, target=2)

    async def scenario():
        loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=0.0)
        await loop.run()
        assert gate.session.is_complete
        task = await loop.reset()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(scenario())
    assert gate.session.is_complete
    assert runtime.calls == 4


def test_first_tick_waits_for_interval():
    runtime = StaticRuntime(None)
    gate = build_gate(runtime)

    async def scenario():
        loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=5.0)
        loop.start()
        await asyncio.sleep(0.05)
        calls = runtime.calls
        await loop.cancel()
        return calls

    assert asyncio.run(scenario()) == 0


def test_failing_frame_source_reports_and_keeps_looping():
    runtime = StaticRuntime(None)
    gate = build_gate(runtime)
    seen = []

    def source():
        raise OSError("camera unplugged")

    async def scenario():
        loop = AutoCaptureLoop(gate, source, interval=0.0, on_transition=seen.append)
        loop.start()
        await asyncio.sleep(0.02)
        running = loop.running
        await loop.cancel()
        return running

    assert asyncio.run(scenario())
    assert len(seen) >= 2
    assert all(t.reason == "camera_not_ready" for t in seen)
    assert gate.state == CaptureFlowState.LOW_CONFIDENCE
    assert runtime.calls == 0


def test_failing_callback_does_not_stop_loop():
    gate = build_gate(SequenceRuntime(make_detection(e) for e in jittered_embeddings(3)), target=3)

    def explode(transition):
        raise RuntimeError("observer failed")

    loop = AutoCaptureLoop(gate, lambda: uniform_frame(), interval=0.0, on_transition=explode)
    asyncio.run(asyncio.wait_for(loop.run(), timeout=2.0))
    assert gate.session.is_complete
