from fi_scanner.daemon_loop import run_polling_loop


def test_run_polling_loop_processes_items_in_order_and_continues_on_item_error():
    calls = {"fetch": 0, "before": 0}
    processed = []
    attempted = []

    def fetch_work():
        calls["fetch"] += 1
        return [1, 2, 3] if calls["fetch"] == 1 else []

    def before_each_poll():
        calls["before"] += 1

    def process_item(item):
        attempted.append(item)
        if item == 2:
            raise RuntimeError("boom")
        processed.append(item)

    sleep_calls = {"count": 0}

    def sleep(_seconds):
        sleep_calls["count"] += 1
        # After the first loop iteration, stop the daemon.
        raise KeyboardInterrupt

    run_polling_loop(
        daemon_name="test",
        fetch_work=fetch_work,
        process_item=process_item,
        poll_interval_seconds=15,
        before_each_poll=before_each_poll,
        sleep=sleep,
    )

    assert calls["fetch"] == 1
    assert calls["before"] == 1
    assert attempted == [1, 2, 3]
    assert processed == [1, 3]
    assert sleep_calls["count"] == 1


def test_run_polling_loop_sleeps_when_idle_and_survives_fetch_errors():
    fetches = {"count": 0}
    sleeps = []

    def fetch_work():
        fetches["count"] += 1
        if fetches["count"] == 1:
            raise RuntimeError("database locked")
        return []

    def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            raise KeyboardInterrupt

    run_polling_loop(
        daemon_name="test",
        fetch_work=fetch_work,
        process_item=lambda item: None,
        poll_interval_seconds=0,
        sleep=sleep,
    )

    assert fetches["count"] == 3
    assert sleeps == [1, 1, 1]
