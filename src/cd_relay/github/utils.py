import aiohttp
import cachetools
from gidgethub import aiohttp as gh_aiohttp
from gidgethub.abc import GitHubAPI
from gidgethub.apps import get_installation_access_token
from sanic.log import logger

from cd_relay import metrics
from cd_relay.config import DeployerConfig
from cd_relay.exceptions import CredentialError
from cd_relay.github.models import CommitStatus, StatusState
from cd_relay.models import TriggerEvent
from cd_relay.utils import read_secret, service_name

REQUESTER = "cd-relay"


def build_public_status_url(
    state: StatusState, event: TriggerEvent, config: DeployerConfig
) -> str:
    url = event.url

    if state == StatusState.success:
        if config.GATEWAY_PRETTY_URL:
            # e.g. https://user.example.com/function
            url = config.GATEWAY_PRETTY_URL.replace("user", event.owner, 1)
            url = url.replace("function", event.service, 1)
        elif config.GATEWAY_PUBLIC_URL:
            public_url = config.GATEWAY_PUBLIC_URL
            if not public_url.endswith("/"):
                public_url += "/"
            url = public_url + "function/" + service_name(event.owner, event.service)

    return url


async def mint_installation_token(
    session: aiohttp.ClientSession, config: DeployerConfig, installation_id: int
) -> str:
    try:
        private_key = read_secret(config.SECRETS_PATH, config.PRIVATE_KEY_NAME)
    except OSError as e:
        raise CredentialError(f"cannot read private key: {e}") from e

    gh_pre = gh_aiohttp.GitHubAPI(session, REQUESTER)
    try:
        access_token_response = await get_installation_access_token(
            gh_pre,
            installation_id=str(installation_id),
            app_id=config.APP_ID,
            private_key=private_key,
        )
    except Exception as e:
        raise CredentialError(f"cannot mint installation token: {e}") from e

    token = access_token_response.get("token", "")
    if not token:
        raise CredentialError("authentication failed Invalid token")
    return token


async def client_for_installation(
    session: aiohttp.ClientSession,
    config: DeployerConfig,
    installation_id: int,
    cache: cachetools.LRUCache | None = None,
) -> GitHubAPI:
    token = await mint_installation_token(session, config, installation_id)

    return gh_aiohttp.GitHubAPI(
        session,
        REQUESTER,
        oauth_token=token,
        cache=cache,
    )


class StatusReporter:
    """Posts commit statuses for pipeline stages. Failures are logged, never raised."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: DeployerConfig,
        cache: cachetools.LRUCache | None = None,
    ):
        self.session = session
        self.config = config
        self.cache = cache

    @property
    def enabled(self) -> bool:
        return self.config.REPORT_STATUS

    async def post_status(self, event: TriggerEvent, status: CommitStatus) -> None:
        gh = await client_for_installation(
            self.session, self.config, event.installation_id, cache=self.cache
        )

        url = f"/repos/{event.owner}/{event.repository}/statuses/{event.sha}"
        if self.config.STERILE:
            logger.info("STERILE mode: would post status %s to %s", status, url)
            return

        try:
            await gh.post(url, data=status.model_dump(mode="json"))
        except Exception as e:
            raise CredentialError(f"cannot post status to {url}: {e}") from e

    async def report(
        self, event: TriggerEvent, state: StatusState, description: str, context: str
    ) -> bool:
        if not self.enabled:
            return False

        status = CommitStatus(
            state=state,
            target_url=build_public_status_url(state, event, self.config),
            description=description,
            context=context,
        )

        logger.info(
            "Status: %s, GitHub installation: %d, Repo: %s, Owner: %s",
            state,
            event.installation_id,
            event.repository,
            event.owner,
        )

        try:
            await self.post_status(event, status)
        except CredentialError as e:
            logger.error("failed to report status %s, error: %s", status, e)
            metrics.github_status_update_errors_total.labels(
                context, type(e.__cause__ or e).__name__
            ).inc()
            return False

        metrics.github_status_updates_total.labels(state, context).inc()
        return True
