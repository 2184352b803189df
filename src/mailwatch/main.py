"""Main entry point for Mailwatch.

Starts the subscription supervisor, resumes every active account, and
runs stored backfill schedules in the background.
The push-notification ingress (an HTTP endpoint owned by the hosting
service) hands Pub/Sub payloads to ``SubscriptionSupervisor.handle_push``.
"""

import asyncio

import asyncpg  # type: ignore[import-not-found,import-untyped]

from mailwatch.config import Settings, get_settings
from mailwatch.controller import ControllerConfig
from mailwatch.extraction.openai_service import OpenAIExtractionService
from mailwatch.gmail.auth import GoogleCredentialRefresher
from mailwatch.gmail.gateway import GmailGateway
from mailwatch.logging import get_logger, setup_logging
from mailwatch.scheduling import BackfillScheduler
from mailwatch.storage import PostgresStore
from mailwatch.supervisor import SubscriptionSupervisor


def build_supervisor(
    settings: Settings,
    store: PostgresStore,
    extraction_service: OpenAIExtractionService,
) -> SubscriptionSupervisor:
    return SubscriptionSupervisor(
        store,
        gateway=GmailGateway(),
        refresher=GoogleCredentialRefresher(
            settings.google_client_id,
            settings.google_client_secret.get_secret_value(),
        ),
        extraction_service=extraction_service,
        topic_name=settings.gmail_pubsub_topic,
        config=ControllerConfig.from_settings(settings),
        confidence_threshold=settings.confidence_threshold,
        processed_label=settings.processed_label,
    )


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("mailwatch.main")

    settings = get_settings()
    log.info(
        "starting_mailwatch",
        environment=settings.environment,
        topic=settings.gmail_pubsub_topic,
        confidence_threshold=settings.confidence_threshold,
    )

    try:
        pool = await asyncpg.create_pool(dsn=settings.postgres_dsn)
        log.info("postgres_pool_created", dsn=settings.postgres_dsn.split("@")[-1])
    except (asyncpg.PostgresError, OSError) as exc:
        log.error("postgres_pool_creation_failed", error=str(exc))
        raise

    store = PostgresStore()
    await store.initialize(pool)

    api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
    extraction_service = OpenAIExtractionService(api_key, model=settings.openai_model)
    supervisor = build_supervisor(settings, store, extraction_service)
    scheduler = BackfillScheduler(
        store, supervisor.backfill, poll_interval=settings.scheduler_poll_seconds
    )

    try:
        resumed = await supervisor.resume_active()
        scheduler.start()
        log.info("mailwatch_running", subscriptions=resumed)
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        log.info("shutdown_requested")
        raise
    finally:
        await scheduler.stop()
        await supervisor.shutdown()
        await extraction_service.close()
        await pool.close()
        log.info("mailwatch_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
