"""Command-line entry point for ``testbay``."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

import httpx
from kombu import Connection

from testbay.config.logging import configure_logging
from testbay.config.settings import AppSettings, load_settings
from testbay.db.base import Base, build_engine, build_session_factory
from testbay.db.repositories import ExecutionRepository, OrganizationRepository
from testbay.distribution.analysis import GeminiFailureAnalyzer
from testbay.distribution.distributor import ResultDistributor
from testbay.distribution.notifier import SlackNotifier
from testbay.distribution.producer import ProducerClient
from testbay.execution.artifacts import ArtifactCollector
from testbay.execution.consumer import TaskConsumer
from testbay.execution.container import ContainerRunner
from testbay.execution.metrics import StatsdEmitter, WorkerMetrics
from testbay.execution.pipeline import RunOptions, TaskPipeline
from testbay.execution.publisher import TaskPublisher, build_task_queue
from testbay.execution.scheduler import FairShareScheduler
from testbay.security.report_tokens import ReportTokenService
from testbay.security.vault import SecretVault
from testbay.utils.logging import SecretRedactor, is_sensitive_key, redact_environment

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create CLI parser for worker and operator commands."""

    parser = argparse.ArgumentParser(prog="testbay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Consume and execute queued tasks.")
    worker.add_argument(
        "--prefetch",
        type=int,
        default=None,
        help="Maximum in-flight tasks (overrides WORKER_PREFETCH).",
    )

    submit = subparsers.add_parser(
        "submit", help="Publish a task descriptor with its fair-share priority."
    )
    submit.add_argument(
        "descriptor",
        nargs="?",
        default="-",
        help="Path to a JSON task descriptor, or '-' for stdin.",
    )

    subparsers.add_parser(
        "encrypt-secret", help="Encrypt a secret read from stdin and print the stored form."
    )
    subparsers.add_parser(
        "encrypt-webhooks", help="Encrypt Slack webhook URLs still stored in plaintext."
    )
    return parser


def _configure(settings: AppSettings) -> None:
    configure_logging(
        settings.logging.level,
        structured=settings.logging.structured,
        default_fields={"service": "testbay"},
    )


def _session_factory(settings: AppSettings):
    engine = build_engine(settings.database.url, echo=settings.database.echo)
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


def _load_vault(settings: AppSettings) -> Optional[SecretVault]:
    if not settings.security.encryption_key:
        return None
    return SecretVault.from_hex(settings.security.encryption_key)


def _require_vault(settings: AppSettings) -> SecretVault:
    vault = _load_vault(settings)
    if vault is None:
        raise RuntimeError("ENCRYPTION_KEY is not set")
    return vault


def _metrics(settings: AppSettings) -> WorkerMetrics:
    return WorkerMetrics(
        StatsdEmitter(
            host=settings.metrics.statsd_host,
            port=settings.metrics.statsd_port,
            prefix=settings.metrics.prefix,
        )
    )


def _build_redactor(settings: AppSettings, host_env: Mapping[str, str]) -> SecretRedactor:
    secrets = [
        settings.security.encryption_key,
        settings.security.report_token_secret,
        settings.analysis.gemini_api_key,
    ]
    secrets.extend(
        value
        for key, value in host_env.items()
        if key in settings.security.inject_env_vars
    )
    secrets.extend(value for key, value in host_env.items() if is_sensitive_key(key))
    return SecretRedactor(secrets=secrets)


def build_pipeline(
    settings: AppSettings,
    *,
    host_env: Mapping[str, str],
    metrics: WorkerMetrics,
) -> tuple[TaskPipeline, tuple[Any, ...]]:
    """Wire the worker's collaborators from ``settings``.

    Returns the pipeline and the collaborators the caller must close.
    """

    session_factory = _session_factory(settings)
    executions = ExecutionRepository(session_factory)
    organizations = OrganizationRepository(session_factory)
    vault = _load_vault(settings)

    report_tokens = None
    if settings.security.report_token_secret:
        report_tokens = ReportTokenService(
            settings.security.report_token_secret,
            ttl_seconds=settings.security.report_token_ttl_seconds,
        )
    else:
        logger.warning("PLATFORM_JWT_SECRET is not set; CI comments will omit report links")

    notifications = settings.notifications
    notifier = SlackNotifier(
        dashboard_base_url=notifications.dashboard_base_url,
        timeout_seconds=notifications.timeout_seconds,
    )
    producer = ProducerClient(
        notifications.producer_url, timeout_seconds=notifications.timeout_seconds
    )
    ci_client = httpx.Client(timeout=notifications.timeout_seconds)
    distributor = ResultDistributor(
        organizations=organizations.get_profile,
        analyzer=GeminiFailureAnalyzer(
            api_key=settings.analysis.gemini_api_key,
            model_name=settings.analysis.model,
            max_log_chars=settings.analysis.max_log_chars,
        ),
        notifier=notifier,
        ci_settings=settings.ci,
        vault=vault,
        report_tokens=report_tokens,
        reports_public_url=notifications.reports_public_url,
        min_log_chars=settings.analysis.min_log_chars,
        analysis_timeout_seconds=settings.analysis.timeout_seconds,
        redactor=_build_redactor(settings, host_env),
        ci_client=ci_client,
        metrics=metrics,
    )

    runner_settings = settings.runner
    runner = ContainerRunner(
        timeout_seconds=runner_settings.timeout_seconds,
        stop_timeout_seconds=runner_settings.stop_timeout_seconds,
        pull_policy=runner_settings.image_pull_policy,
        artifact_collector=ArtifactCollector(
            allure_generate=runner_settings.allure_generate,
            allure_command=runner_settings.allure_command,
        ),
    )
    pipeline = TaskPipeline(
        runner=runner,
        executions=executions,
        distributor=distributor,
        producer=producer,
        options=RunOptions(
            reports_root=Path(runner_settings.reports_dir),
            running_in_docker=runner_settings.running_in_docker,
            host_alias=runner_settings.host_alias,
            working_dir=runner_settings.working_dir,
            entrypoint=runner_settings.entrypoint,
            reserved_prefix=settings.security.reserved_env_prefix,
            forward_keys=settings.security.inject_env_vars,
            reports_public_url=notifications.reports_public_url,
        ),
        host_env=host_env,
        metrics=metrics,
    )
    return pipeline, (distributor, notifier, producer, ci_client)


def _run_worker(settings: AppSettings, args: argparse.Namespace) -> None:
    host_env = dict(os.environ)
    prefetch = args.prefetch or settings.broker.prefetch_count
    logger.info(
        "Starting worker",
        extra={
            "queue": settings.broker.task_queue,
            "prefetch_count": prefetch,
            "forwarded_env": redact_environment(
                {
                    key: host_env[key]
                    for key in settings.security.inject_env_vars
                    if key in host_env
                }
            ),
        },
    )
    metrics = _metrics(settings)
    pipeline, closeables = build_pipeline(
        settings, host_env=host_env, metrics=metrics
    )
    task_queue = build_task_queue(settings.broker)

    try:
        with Connection(settings.broker.amqp_url) as connection:
            consumer = TaskConsumer(
                connection,
                task_queue=task_queue,
                pipeline=pipeline,
                prefetch_count=prefetch,
            )

            def _request_stop(signum: int, _frame: Any) -> None:
                logger.info("Received signal %s; draining in-flight tasks", signum)
                consumer.should_stop = True

            signal.signal(signal.SIGTERM, _request_stop)
            signal.signal(signal.SIGINT, _request_stop)
            consumer.run()
    finally:
        for resource in closeables:
            resource.close()


def _read_source(path: str, stdin: TextIO) -> str:
    if path == "-":
        return stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _submit(settings: AppSettings, args: argparse.Namespace, stdin: TextIO, stdout: TextIO) -> None:
    payload = json.loads(_read_source(args.descriptor, stdin))
    executions = ExecutionRepository(_session_factory(settings))
    task_queue = build_task_queue(settings.broker)
    with Connection(settings.broker.amqp_url) as connection:
        publisher = TaskPublisher(
            connection,
            queue=task_queue,
            scheduler=FairShareScheduler(executions.count_running),
            executions=executions,
            metrics=_metrics(settings),
        )
        priority = publisher.submit(payload)
    stdout.write(f"{json.dumps({'priority': priority})}\n")


def _encrypt_secret(settings: AppSettings, stdin: TextIO, stdout: TextIO) -> None:
    secret = stdin.read().strip()
    if not secret:
        raise ValueError("No secret provided on stdin")
    encrypted = _require_vault(settings).encrypt(secret)
    stdout.write(f"{json.dumps(encrypted.to_payload())}\n")


def _encrypt_webhooks(settings: AppSettings, stdout: TextIO) -> None:
    vault = _require_vault(settings)
    organizations = OrganizationRepository(_session_factory(settings))
    pending = organizations.list_plaintext_webhooks()
    for organization_id, url in pending:
        organizations.set_slack_webhook(organization_id, vault.encrypt(url).to_payload())
        logger.info("Encrypted Slack webhook", extra={"organization_id": organization_id})
    stdout.write(f"Encrypted {len(pending)} webhook(s)\n")


def main(
    argv: list[str] | None = None,
    *,
    settings: Optional[AppSettings] = None,
    stdin: TextIO = sys.stdin,
    stdout: TextIO = sys.stdout,
) -> int:
    """Entry point for `testbay`."""

    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings or load_settings()
        _configure(settings)
        if args.command == "worker":
            _run_worker(settings, args)
        elif args.command == "submit":
            _submit(settings, args, stdin, stdout)
        elif args.command == "encrypt-secret":
            _encrypt_secret(settings, stdin, stdout)
        elif args.command == "encrypt-webhooks":
            _encrypt_webhooks(settings, stdout)
    except Exception as exc:
        parser.exit(status=1, message=f"testbay {args.command} failed: {exc}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
