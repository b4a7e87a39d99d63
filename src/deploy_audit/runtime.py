from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import aiohttp
from sanic.log import logger

from deploy_audit import config as app_config
from deploy_audit.github import API, github_api
from deploy_audit.nais import NaisClient
from deploy_audit.notify import NotificationDispatcher
from deploy_audit.slack import SlackTransport
from deploy_audit.storage import AuditStore
from deploy_audit.sync.orchestrator import SyncOrchestrator
from deploy_audit.verification.correlator import (
    PullRequestCorrelator,
    make_snapshot_cache,
)
from deploy_audit.verification.verifier import DeploymentVerifier


@dataclass
class Services:
    store: AuditStore
    api: API
    verifier: DeploymentVerifier
    orchestrator: SyncOrchestrator
    dispatcher: Optional[NotificationDispatcher]


def open_store(path=None) -> AuditStore:
    store = AuditStore(path or app_config.DATABASE_PATH, worker_id=app_config.POD_ID)
    store.initialize()
    return store


@asynccontextmanager
async def audit_services(
    store: AuditStore, *, config=app_config
) -> AsyncIterator[Services]:
    async with AsyncExitStack() as stack:
        session = await stack.enter_async_context(aiohttp.ClientSession())
        api = await stack.enter_async_context(github_api(session))

        correlator = PullRequestCorrelator(
            api, make_snapshot_cache(config.PR_CACHE_SIZE, config.PR_CACHE_TTL)
        )
        verifier = DeploymentVerifier(
            store, api, correlator=correlator, max_commits=config.MAX_GRAPH_DEPTH
        )

        dispatcher = None
        if config.SLACK_BOT_TOKEN:
            dispatcher = NotificationDispatcher(
                store,
                SlackTransport(session, config.SLACK_BOT_TOKEN),
                max_age_days=config.NOTIFICATION_MAX_AGE_DAYS,
                dry_run=config.DRY_RUN,
            )
        else:
            logger.info("SLACK_BOT_TOKEN not set, notifications disabled")

        orchestrator = SyncOrchestrator(
            store=store,
            events=NaisClient(
                session,
                url=config.NAIS_GRAPHQL_URL,
                api_key=config.NAIS_API_KEY,
                page_size=config.NAIS_PAGE_SIZE,
            ),
            verifier=verifier,
            config=config,
            dispatcher=dispatcher,
        )
        yield Services(
            store=store,
            api=api,
            verifier=verifier,
            orchestrator=orchestrator,
            dispatcher=dispatcher,
        )
