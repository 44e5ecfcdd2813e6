from fi_scanner.memory import MemoryGuard, process_rss_bytes


def test_process_rss_is_positive():
    assert process_rss_bytes() > 0


def test_guard_trips_above_ceiling():
    samples = iter([100, 101])
    guard = MemoryGuard(ceiling_bytes=100, sampler=lambda: next(samples))

    assert guard.exceeded() == (False, 100)
    assert guard.exceeded() == (True, 101)


def test_process_rss_uses_psutil(mocker):
    process = mocker.patch("fi_scanner.memory.psutil.Process")
    process.return_value.memory_info.return_value.rss = 4242

    assert process_rss_bytes() == 4242
