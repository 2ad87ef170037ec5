from relay_library.streaming.buffers import (
    ANTHROPIC_PROFILE,
    AdaptiveTextBuffer,
    BufferProfile,
)


def test_flushes_on_delay_or_size() -> None:
    buffer = AdaptiveTextBuffer(start_ms=0.0)
    assert not buffer.should_flush(100.0)

    buffer.append("hi")
    assert not buffer.should_flush(10.0)
    assert buffer.should_flush(25.0)
    assert buffer.take(25.0) == "hi"
    assert len(buffer) == 0

    buffer.append("x" * 40)
    assert buffer.should_flush(26.0)


def test_high_velocity_shrinks_thresholds() -> None:
    buffer = AdaptiveTextBuffer()
    assert buffer.thresholds() == (40, 25)

    buffer.record_arrival(100, 0.0)
    buffer.record_arrival(100, 5.0)
    assert buffer.velocity == 20.0
    assert buffer.is_high_velocity
    assert buffer.thresholds() == (20, 12)

    buffer.append("y" * 20)
    assert buffer.should_flush(1.0)


def test_word_threshold_profile() -> None:
    buffer = AdaptiveTextBuffer(ANTHROPIC_PROFILE)
    buffer.record_arrival(1000, 0.0)
    buffer.record_arrival(1000, 1.0)
    assert not buffer.is_high_velocity

    buffer.append("word " * 19)
    assert not buffer.should_flush(1.0)
    buffer.append("last")
    assert buffer.should_flush(1.0)
    assert buffer.pending.endswith("last")


def test_custom_profile() -> None:
    buffer = AdaptiveTextBuffer(BufferProfile(min_size=3, max_delay_ms=1000, adaptive=False))
    buffer.append("ab")
    assert not buffer.should_flush(10.0)
    buffer.append("c")
    assert buffer.should_flush(10.0)
