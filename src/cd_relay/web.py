from sanic import Sanic, response
import aiohttp
from gidgethub.apps import get_jwt
from gidgethub import aiohttp as gh_aiohttp
from sanic.log import logger
import cachetools
from aiolimiter import AsyncLimiter
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import contextlib
import functools

from cd_relay.builder import BuildService
from cd_relay.builder.engine import BuildEngine
from cd_relay.config import BuilderConfig, DeployerConfig, load_config
from cd_relay.exceptions import TransportError, ValidationError
from cd_relay.gateway import Gateway
from cd_relay.models import TriggerEvent
from cd_relay.pipeline import Pipeline
from cd_relay.utils import read_secret


def with_session(func):
    @functools.wraps(func)
    async def wrapper(
        *args, app: Sanic, session: aiohttp.ClientSession | None = None, **kwargs
    ):
        async with contextlib.AsyncExitStack() as stack:
            if session is None:
                session = await stack.enter_async_context(
                    aiohttp.ClientSession(
                        timeout=aiohttp.ClientTimeout(
                            total=app.ctx.config.HTTP_TIMEOUT
                        )
                    )
                )
            return await func(*args, app=app, session=session, **kwargs)

    return wrapper


@with_session
async def handle_deploy(request, *, app: Sanic, session: aiohttp.ClientSession) -> str:
    event = TriggerEvent.from_headers(request.headers)
    logger.debug(
        "Deploy requested for %s/%s at %s", event.owner, event.repository, event.sha
    )

    pipeline = Pipeline.create(session, app.ctx.config, cache=app.ctx.cache)
    return await pipeline.run(event, request.body)


def add_metrics_route(app: Sanic):
    @app.route("/metrics")
    async def prometheus_metrics(request):
        return response.raw(generate_latest(), content_type=CONTENT_TYPE_LATEST)


def create_builder_app(config: BuilderConfig, engine: BuildEngine | None = None):
    app = Sanic("cd-relay-builder")
    app.ctx.config = config
    logger.setLevel(config.OVERRIDE_LOGGING)

    # a build answers only once the image is pushed
    app.config.RESPONSE_TIMEOUT = config.BUILD_TIMEOUT + 30

    app.ctx.build_service = BuildService(config, engine=engine)

    @app.route("/")
    async def index(request):
        logger.debug("status check")
        return response.text("ok")

    @app.route("/build", methods=["POST"])
    async def build(request):
        logger.debug("Build requested (%d bytes)", len(request.body))

        result = await app.ctx.build_service.build(request.body)

        if result.succeeded and "text/plain" in request.headers.get("accept", ""):
            return response.text(result.image_name)

        return response.text(
            result.model_dump_json(by_alias=True),
            status=200 if result.succeeded else 500,
            content_type="application/json",
        )

    add_metrics_route(app)
    return app


def create_deployer_app(config: DeployerConfig):
    app = Sanic("cd-relay-deployer")
    app.ctx.config = config
    logger.setLevel(config.OVERRIDE_LOGGING)

    app.ctx.cache = cachetools.LRUCache(maxsize=500)
    app.ctx.aiohttp_session = None

    limiter = AsyncLimiter(10)

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT)
        )

    @app.listener("after_server_stop")
    async def close(app, loop):
        if app.ctx.aiohttp_session is not None:
            logger.debug("Closing aiohttp session")
            await app.ctx.aiohttp_session.close()

    @app.route("/")
    async def index(request):
        logger.debug("status check")
        return response.text("ok")

    @app.route("/health")
    async def health(request):
        if not limiter.has_capacity():
            return response.text("Rate limited", status=429)
        await limiter.acquire()

        async with contextlib.AsyncExitStack() as stack:
            session = app.ctx.aiohttp_session
            if session is None:
                session = await stack.enter_async_context(aiohttp.ClientSession())

            logger.info("Checking health")
            gateway_ok = False
            try:
                await Gateway(session, config).list_functions()
                logger.info("Gateway ok")
                gateway_ok = True
            except TransportError as e:
                logger.error("Gateway function list failed: %s", e)

            github_str = "disabled"
            github_ok = True
            if config.REPORT_STATUS:
                try:
                    private_key = read_secret(config.SECRETS_PATH, config.PRIVATE_KEY_NAME)
                    token = get_jwt(app_id=config.APP_ID, private_key=private_key)
                    gh = gh_aiohttp.GitHubAPI(session, __name__)
                    app_info = await gh.getitem("/app", jwt=token)
                    github_ok = app_info is not None
                except Exception as e:
                    logger.error("GitHub App info failed: %s", e)
                    logger.exception(e)
                    github_ok = False
                github_str = "ok" if github_ok else "not ok"

        status = 200 if gateway_ok and github_ok else 500
        gateway_str = "ok" if gateway_ok else "not ok"
        text = f"Gateway: {gateway_str}, GitHub: {github_str}"
        return response.text(text, status=status)

    @app.route("/deploy", methods=["POST"])
    async def deploy(request):
        logger.debug("Deploy request received")
        try:
            summary = await handle_deploy(
                request, app=app, session=app.ctx.aiohttp_session
            )
        except ValidationError as e:
            logger.error("Rejected deploy request: %s", e)
            return response.text(str(e), status=400)
        return response.text(summary)

    add_metrics_route(app)
    return app


def builder_app():
    """Factory for ``sanic cd_relay.web:builder_app --factory``."""
    config = load_config(BuilderConfig)
    config.print_config()
    return create_builder_app(config)


def deployer_app():
    """Factory for ``sanic cd_relay.web:deployer_app --factory``."""
    config = load_config(DeployerConfig)
    config.print_config()
    return create_deployer_app(config)
