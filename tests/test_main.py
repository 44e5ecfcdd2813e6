from fi_scanner import main as main_module
from fi_scanner.errors import JobClaimError
from fi_scanner.notifications import LogDeliveryChannel, WebhookDeliveryChannel


def _set_required_env(monkeypatch, tmp_path):
    monkeypatch.setenv("S3_BUCKET_NAME", "planning-bucket")
    monkeypatch.setenv("OPENAI_API_KEY", "test_api_key")
    monkeypatch.setenv("JOB_DB_PATH", str(tmp_path / "jobs.sqlite3"))


def test_main_exits_on_config_error(mocker, monkeypatch):
    logger = mocker.Mock()
    monkeypatch.setattr(
        main_module.structlog, "get_logger", mocker.Mock(return_value=logger)
    )
    monkeypatch.setattr(main_module, "Settings", mocker.Mock(side_effect=ValueError("bad")))
    store_spy = mocker.Mock()
    loop_spy = mocker.Mock()
    monkeypatch.setattr(main_module, "JobStore", store_spy)
    monkeypatch.setattr(main_module, "run_polling_loop", loop_spy)

    main_module.main()

    logger.error.assert_called_once()
    store_spy.assert_not_called()
    loop_spy.assert_not_called()


def test_main_runs_claimable_jobs_and_skips_claim_conflicts(mocker, monkeypatch, tmp_path):
    _set_required_env(monkeypatch, tmp_path)
    attempted = []

    class DummyRunner:
        worker_id = "worker-a"
        aggregator = mocker.Mock()

        def run(self, job_id):
            attempted.append(job_id)
            if job_id == "job-1":
                raise JobClaimError("held by another worker")

    def run_once(**kwargs):
        kwargs["before_each_poll"]()
        for job_id in ["job-1", "job-2"]:
            kwargs["process_item"](job_id)
        assert kwargs["fetch_work"]() == []

    monkeypatch.setattr(main_module, "build_runner", lambda settings, store: DummyRunner())
    monkeypatch.setattr(main_module, "configure_logging", lambda settings: None)
    monkeypatch.setattr(main_module, "setup_libraries", lambda settings: None)
    monkeypatch.setattr(main_module, "run_polling_loop", run_once)
    close_spy = mocker.spy(main_module.JobStore, "close")

    main_module.main()

    assert attempted == ["job-1", "job-2"]
    close_spy.assert_called_once()


def test_build_runner_picks_delivery_channel(mocker, monkeypatch, tmp_path):
    _set_required_env(monkeypatch, tmp_path)
    mocker.patch("fi_scanner.store.boto3.client")
    store = main_module.JobStore(":memory:")
    try:
        runner = main_module.build_runner(main_module.Settings(), store)
        assert isinstance(runner.aggregator.channel, LogDeliveryChannel)

        monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.com/fi")
        runner = main_module.build_runner(main_module.Settings(), store)
        assert isinstance(runner.aggregator.channel, WebhookDeliveryChannel)
        assert runner.cascade.cache.capacity == 1000
    finally:
        store.close()
