import pytest

from qr_live.decoders import FallbackHeuristic, PrimaryDecoder
from qr_live.hardware import SimulatedFrameSource, SimulatedScene
from qr_live.interfaces import NOT_FOUND, AcquisitionError, Decoded, DeviceError
from qr_live.session import ScanSession, SessionConfig, SessionState


class _ScriptedDecoder:
    name = "scripted"
    interval_s = 0.1

    def __init__(self, decode_on: int | None = None, payload: str = "https://example.org") -> None:
        self.decode_on = decode_on
        self.payload = payload
        self.calls = 0
        self.before_return = None

    def decode(self, buffer):
        self.calls += 1
        if self.before_return is not None:
            self.before_return()
        if self.decode_on is not None and self.calls == self.decode_on:
            return Decoded(payload=self.payload)
        return NOT_FOUND

    def reset(self) -> None:
        self.calls = 0


class _FlakySource(SimulatedFrameSource):
    def __init__(self, failures, frames=None) -> None:
        super().__init__(frames)
        self._failures = list(failures)

    def acquire(self, preferred_facing, ideal_resolution):
        if self._failures:
            raise AcquisitionError(self._failures.pop(0))
        return super().acquire(preferred_facing, ideal_resolution)


class _Recorder:
    def __init__(self) -> None:
        self.decoded: list[str] = []
        self.errors: list[str] = []


def _session(source, strategy=None, recorder=None, **config_kwargs):
    recorder = recorder or _Recorder()
    config_kwargs.setdefault("threaded", False)
    strategy = strategy or _ScriptedDecoder()
    session = ScanSession(
        source,
        SessionConfig(**config_kwargs),
        on_decoded=recorder.decoded.append,
        on_error=recorder.errors.append,
        strategy_factory=lambda config: strategy,
    )
    return session, recorder


def _assert_handle_invariant(session: ScanSession, source: SimulatedFrameSource) -> None:
    if session.state in (SessionState.IDLE, SessionState.SUCCEEDED, SessionState.FAILED):
        assert session.handle is None
        assert source.active is False
    elif session.state is SessionState.SCANNING:
        assert session.handle is not None
        assert source.active is True


def test_primary_decode_on_third_tick_emits_once_and_stops_sampling() -> None:
    source = SimulatedFrameSource([SimulatedScene().blank()])
    calls = {"n": 0}

    def _loader():
        def _decode(gray):
            calls["n"] += 1
            return ["https://example.org"] if calls["n"] == 3 else []

        return _decode

    primary = PrimaryDecoder("pyzbar", try_inverted=False, loaders={"pyzbar": _loader})
    assert primary.try_initialize().available
    session, recorder = _session(source, strategy=primary)

    assert session.start() is True
    assert session.state is SessionState.SCANNING
    sampler = session.sampler
    for _ in range(5):
        session.poll()

    assert recorder.decoded == ["https://example.org"]
    assert recorder.errors == []
    assert session.state is SessionState.SUCCEEDED
    assert session.result == Decoded(payload="https://example.org")
    assert sampler.tick_count == 3
    assert sampler.running is False
    assert calls["n"] == 3
    assert source.capture_count == 3
    _assert_handle_invariant(session, source)


def test_permission_denied_fails_without_sampler_or_handle() -> None:
    source = SimulatedFrameSource(fail_with="permission denied")
    session, recorder = _session(source)

    assert session.start() is False

    assert session.state is SessionState.FAILED
    assert session.failure_reason == "permission denied"
    assert recorder.errors == ["permission denied"]
    assert recorder.decoded == []
    assert session.sampler is None
    assert session.handle is None
    assert source.acquire_count == 0


def test_stop_while_scanning_is_silent_and_releases() -> None:
    source = SimulatedFrameSource()
    session, recorder = _session(source)
    session.start()
    session.poll()

    assert session.stop() is True

    assert session.state is SessionState.IDLE
    assert source.release_count == 1
    assert recorder.decoded == [] and recorder.errors == []
    _assert_handle_invariant(session, source)


def test_stop_twice_is_a_noop() -> None:
    source = SimulatedFrameSource()
    session, recorder = _session(source)
    session.start()

    assert session.stop() is True
    assert session.stop() is False

    assert source.release_count == 1
    assert recorder.decoded == [] and recorder.errors == []


def test_stop_while_acquiring_releases_late_handle() -> None:
    holder = {}

    class _SlowSource(SimulatedFrameSource):
        def acquire(self, preferred_facing, ideal_resolution):
            handle = super().acquire(preferred_facing, ideal_resolution)
            assert holder["session"].state is SessionState.ACQUIRING
            assert holder["session"].stop() is True
            return handle

    source = _SlowSource()
    session, recorder = _session(source)
    holder["session"] = session

    assert session.start() is False

    assert session.state is SessionState.IDLE
    assert source.active is False
    assert source.release_count == 1
    assert session.sampler is None
    assert recorder.decoded == [] and recorder.errors == []


def test_close_while_acquiring_cancels_session() -> None:
    holder = {}

    class _SlowSource(SimulatedFrameSource):
        def acquire(self, preferred_facing, ideal_resolution):
            handle = super().acquire(preferred_facing, ideal_resolution)
            holder["session"].close()
            return handle

    source = _SlowSource()
    session, recorder = _session(source)
    holder["session"] = session

    assert session.start() is False
    assert source.active is False
    assert session.start() is False
    assert recorder.decoded == [] and recorder.errors == []


@pytest.mark.parametrize("state", ["idle", "succeeded", "failed"])
def test_stop_outside_active_states_is_a_noop(state) -> None:
    if state == "failed":
        source = SimulatedFrameSource(fail_with="no camera device available")
    else:
        source = SimulatedFrameSource()
    session, recorder = _session(source, strategy=_ScriptedDecoder(decode_on=1))
    if state != "idle":
        session.start()
        session.poll()
    expected = session.state
    emitted = (list(recorder.decoded), list(recorder.errors))

    assert session.stop() is False

    assert session.state is expected
    assert (recorder.decoded, recorder.errors) == emitted
    _assert_handle_invariant(session, source)


def test_start_while_scanning_is_rejected() -> None:
    source = SimulatedFrameSource()
    session, _ = _session(source)
    session.start()

    assert session.start() is False

    assert session.state is SessionState.SCANNING
    assert source.acquire_count == 1


def test_retry_recovers_from_failure() -> None:
    source = _FlakySource(["device busy"])
    session, recorder = _session(source, strategy=_ScriptedDecoder(decode_on=2))

    assert session.retry() is False
    session.start()
    assert session.state is SessionState.FAILED

    assert session.retry() is True
    assert session.state is SessionState.SCANNING
    session.poll()
    session.poll()

    assert recorder.errors == ["device busy"]
    assert recorder.decoded == ["https://example.org"]
    assert session.state is SessionState.SUCCEEDED
    assert session.retry() is False


def test_start_after_success_begins_fresh_session() -> None:
    source = SimulatedFrameSource()
    strategy = _ScriptedDecoder(decode_on=2)
    session, recorder = _session(source, strategy=strategy)

    for _ in range(2):
        session.start()
        session.poll()
        session.poll()

    assert recorder.decoded == ["https://example.org", "https://example.org"]
    assert source.acquire_count == 2
    assert source.release_count == 2


def test_device_fault_fails_session_once() -> None:
    source = SimulatedFrameSource([SimulatedScene().blank(), DeviceError("camera unplugged")])
    session, recorder = _session(source)
    session.start()

    for _ in range(4):
        session.poll()

    assert session.state is SessionState.FAILED
    assert session.failure_reason == "camera unplugged"
    assert recorder.errors == ["camera unplugged"]
    assert recorder.decoded == []
    _assert_handle_invariant(session, source)


def test_self_cancel_inside_tick_leaves_nothing_running() -> None:
    source = SimulatedFrameSource()
    strategy = _ScriptedDecoder(decode_on=1)
    session, recorder = _session(source, strategy=strategy)
    session.start()
    sampler = session.sampler
    strategy.before_return = session.stop

    session.poll()

    assert session.state is SessionState.IDLE
    assert sampler.running is False
    assert source.active is False
    assert recorder.decoded == [] and recorder.errors == []
    assert session.poll() is False


def test_heuristic_session_reports_synthetic_payload_on_sixteenth_tick() -> None:
    source = SimulatedFrameSource([SimulatedScene().checkerboard()])
    payloads = []
    session = ScanSession(source, SessionConfig(decoder="heuristic", threaded=False), on_decoded=payloads.append)

    session.start()
    assert isinstance(session.strategy, FallbackHeuristic)
    assert session.sampler.interval_s == pytest.approx(0.15)
    for _ in range(15):
        session.poll()
    assert payloads == []

    session.poll()

    assert len(payloads) == 1
    assert payloads[0].startswith("https://example.com/qr-detected-")
    assert session.result.synthetic is True
    assert session.state is SessionState.SUCCEEDED


def test_heuristic_counters_reset_between_sessions() -> None:
    source = SimulatedFrameSource([SimulatedScene().checkerboard()])
    session = ScanSession(source, SessionConfig(decoder="heuristic", threaded=False))

    session.start()
    for _ in range(10):
        session.poll()
    session.stop()
    session.start()

    assert session.strategy.attempts == 0
    for _ in range(15):
        session.poll()
    assert session.state is SessionState.SCANNING


def test_exhaustive_transitions_keep_handle_invariant() -> None:
    source = _FlakySource(["permission denied"], frames=[SimulatedScene().blank()])
    strategy = _ScriptedDecoder(decode_on=2)
    session, recorder = _session(source, strategy=strategy)

    steps = [
        session.stop,
        session.start,   # -> FAILED
        session.stop,
        session.retry,   # -> SCANNING
        session.start,
        session.stop,    # -> IDLE
        session.retry,
        session.start,   # -> SCANNING
        session.poll,
        session.poll,    # -> SUCCEEDED
        session.stop,
        session.retry,
        session.start,   # -> SCANNING
        session.close,   # -> IDLE, closed
        session.start,
    ]
    for step in steps:
        step()
        _assert_handle_invariant(session, source)

    assert recorder.errors == ["permission denied"]
    assert recorder.decoded == ["https://example.org"]
    assert source.acquire_count == source.release_count == 3


def test_threaded_session_waits_for_decode() -> None:
    source = SimulatedFrameSource([SimulatedScene().blank()])
    strategy = _ScriptedDecoder(decode_on=3)
    strategy.interval_s = 0.005
    session, recorder = _session(source, strategy=strategy, threaded=True)

    with session:
        session.start()
        assert session.wait(timeout=2.0) is True

    assert recorder.decoded == ["https://example.org"]
    assert session.state is SessionState.SUCCEEDED
    assert source.active is False


def test_threaded_session_stop_releases_before_returning() -> None:
    source = SimulatedFrameSource([SimulatedScene().blank()])
    session, recorder = _session(source, threaded=True)

    session.start()
    assert session.stop() is True

    assert source.active is False
    assert session.sampler is None
    assert recorder.decoded == [] and recorder.errors == []


def test_session_config_validation() -> None:
    with pytest.raises(ValueError, match="preferred_facing"):
        SessionConfig(preferred_facing="sideways")
    with pytest.raises(ValueError, match="ideal_resolution"):
        SessionConfig(ideal_resolution=(0, 480))
    with pytest.raises(ValueError, match="intervals"):
        SessionConfig(primary_interval_s=0.0)
    with pytest.raises(ValueError, match="decoder"):
        SessionConfig(decoder="zxing")


def test_strategy_setup_failure_fails_session_and_releases() -> None:
    source = SimulatedFrameSource()
    recorder = _Recorder()

    def _factory(config):
        raise RuntimeError("decoder backend crashed")

    session = ScanSession(
        source,
        SessionConfig(threaded=False),
        on_decoded=recorder.decoded.append,
        on_error=recorder.errors.append,
        strategy_factory=_factory,
    )

    assert session.start() is False

    assert session.state is SessionState.FAILED
    assert session.failure_reason == "scanner setup failed: decoder backend crashed"
    assert recorder.errors == ["scanner setup failed: decoder backend crashed"]
    assert session.sampler is None
    assert source.release_count == 1
    _assert_handle_invariant(session, source)


def test_placeholder_template_is_validated_up_front() -> None:
    with pytest.raises(ValueError, match="placeholder_template"):
        SessionConfig(placeholder_template="qr-{ts}")
    with pytest.raises(ValueError, match="placeholder_template"):
        SessionConfig(placeholder_template="qr-{}")

    config = SessionConfig(placeholder_template="qr-{timestamp_ms}")
    assert config.placeholder_template == "qr-{timestamp_ms}"
