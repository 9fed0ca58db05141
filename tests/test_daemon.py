from fakes import seed_tokens
from jobs import daemon as daemon_module
from jobs.models import JobStatus, JobType


def test_fetch_runnable_reconciles_before_listing(make_stack):
    stack = make_stack(CORPORA="gaucho")
    seed_tokens(stack.client, "gaucho", 2)
    job = stack.orchestrator.start()

    jobs = daemon_module._fetch_runnable(stack.orchestrator)

    assert [j.id for j in jobs] == [job.id]


def test_main_runs_one_chunk_per_runnable_job(monkeypatch, make_stack):
    stack = make_stack(CORPORA="gaucho", JOB_WORKERS=1)
    seed_tokens(stack.client, "gaucho", 3)
    job = stack.orchestrator.start()
    polls = []

    def run_once(**kwargs):
        polls.append(kwargs)
        for item in kwargs["fetch_work"]():
            kwargs["process_item"](item)

    monkeypatch.setattr(daemon_module, "create_orchestrator", lambda settings: stack.orchestrator)
    monkeypatch.setattr(daemon_module, "configure_logging", lambda settings: None)
    monkeypatch.setattr(daemon_module, "setup_libraries", lambda settings: None)
    monkeypatch.setattr(daemon_module, "run_polling_threadpool", run_once)

    daemon_module.main()

    assert polls[0]["daemon_name"] == "jobs"
    assert polls[0]["max_workers"] == 1
    assert stack.repository.get(JobType.ANNOTATE, job.id).status is JobStatus.COMPLETED
    assert stack.client.closed


def test_main_stops_on_configuration_error(monkeypatch):
    monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "test_api_key")
    called = []
    monkeypatch.setattr(daemon_module, "create_orchestrator", lambda settings: called.append(1))

    daemon_module.main()

    assert called == []
