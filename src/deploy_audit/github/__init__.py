from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiocache
import aiohttp
import cachetools
from aiolimiter import AsyncLimiter
from gidgethub import aiohttp as gh_aiohttp
from gidgethub.apps import get_installation_access_token
from sanic.log import logger

from deploy_audit import config as app_config
from deploy_audit.github.api import API

USER_AGENT = "deploy-audit"

httpcache = cachetools.LRUCache(maxsize=500)


@aiocache.cached(ttl=app_config.ACCESS_TOKEN_TTL, key_builder=lambda fn, gh, id: id)
async def get_access_token(gh: gh_aiohttp.GitHubAPI, installation_id: int) -> str:
    logger.debug("Getting NEW installation access token for %d", installation_id)
    access_token_response = await get_installation_access_token(
        gh,
        installation_id=installation_id,
        app_id=app_config.GITHUB_APP_ID,
        private_key=app_config.GITHUB_PRIVATE_KEY,
    )
    return access_token_response["token"]


async def _resolve_token(session: aiohttp.ClientSession) -> str:
    if app_config.GITHUB_TOKEN:
        return app_config.GITHUB_TOKEN
    if app_config.GITHUB_APP_ID is None or app_config.GITHUB_INSTALLATION_ID is None:
        raise RuntimeError(
            "Set GITHUB_TOKEN or GITHUB_APP_ID, GITHUB_PRIVATE_KEY and GITHUB_INSTALLATION_ID"
        )
    gh = gh_aiohttp.GitHubAPI(session, USER_AGENT)
    return await get_access_token(gh, app_config.GITHUB_INSTALLATION_ID)


@asynccontextmanager
async def github_api(session: aiohttp.ClientSession | None = None) -> AsyncIterator[API]:
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession()
    try:
        token = await _resolve_token(session)
        gh = gh_aiohttp.GitHubAPI(
            session,
            USER_AGENT,
            oauth_token=token,
            cache=httpcache,
        )
        yield API(gh, AsyncLimiter(app_config.GITHUB_REQUESTS_PER_SECOND, 1))
    finally:
        if owns_session:
            await session.close()


__all__ = ["API", "get_access_token", "github_api"]
