import asyncio
import logging
import typing
from pathlib import Path

from aiohttp import web

from acmekit.client.challenge_solver import ChallengeSolver
from acmekit.models import ChallengeType
from acmekit.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""This module contains challenge solvers for the http-01 challenge type.

`8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_
"""

CHALLENGE_PATH = "/.well-known/acme-challenge/"


@PluginRegistry.register_plugin("http01")
class HTTP01Solver(ChallengeSolver):
    """Answers http-01 challenges with a built-in web server.

    The server is started on the first :meth:`present` and stopped once the last
    challenge has been cleaned up. Binding a fixed port makes it usable by one
    client at a time only, but a single instance serves any number of tokens.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["http01"] = "http01"
        host: str = "0.0.0.0"
        """Address to bind the challenge server to"""
        port: int = 80
        """Port to bind the challenge server to. The CA always connects to port 80."""

    def __init__(self, cfg: Config = None):
        super().__init__(cfg)
        cfg = cfg or self.Config()

        self._host = cfg.host
        self._port = cfg.port
        self._tokens: typing.Dict[str, str] = dict()
        self._runner: typing.Optional[web.AppRunner] = None
        self._lock = asyncio.Lock()

        self.app = web.Application()
        self.app.add_routes(
            [web.get(CHALLENGE_PATH + "{token}", self.handle_acme_challenge)]
        )

    @property
    def port(self) -> typing.Optional[int]:
        """The port the server listens on, or *None* if it is not running."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    async def handle_acme_challenge(self, request: web.Request) -> web.Response:
        token = request.match_info["token"]
        try:
            key_authorization = self._tokens[token]
        except KeyError:
            logger.debug("Unknown token %s requested by %s", token, request.remote)
            raise web.HTTPNotFound

        logger.debug("Serving key authorization for token %s to %s", token, request.remote)
        return web.Response(text=key_authorization, content_type="text/plain")

    async def _start(self) -> None:
        async with self._lock:
            if self._runner is not None:
                return

            runner = web.AppRunner(self.app)
            await runner.setup()
            site = web.TCPSite(runner, self._host, self._port)
            try:
                await site.start()
            except OSError:
                await runner.cleanup()
                raise

            self._runner = runner
            logger.info("http-01 challenge server listening on %s", runner.addresses)

    async def stop(self) -> None:
        async with self._lock:
            if self._runner is None:
                return
            await self._runner.cleanup()
            self._runner = None
            logger.info("http-01 challenge server stopped")

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        self._tokens[token] = key_authorization
        await self._start()

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        self._tokens.pop(token, None)
        if not self._tokens:
            await self.stop()


@PluginRegistry.register_plugin("webroot")
class WebrootSolver(ChallengeSolver):
    """Answers http-01 challenges by writing the key authorization into the webroot of an existing web server."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["webroot"] = "webroot"
        webroot: Path
        """The web server's document root"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._challenge_dir = Path(cfg.webroot) / CHALLENGE_PATH.strip("/")

    def _token_path(self, token: str) -> Path:
        if "/" in token or token in (".", ".."):
            raise ValueError(f"Invalid challenge token {token!r}")
        return self._challenge_dir / token

    def _write(self, token: str, key_authorization: str) -> None:
        self._challenge_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        path = self._token_path(token)
        path.write_text(key_authorization)
        path.chmod(0o644)

    def _remove(self, token: str) -> None:
        self._token_path(token).unlink(missing_ok=True)

    async def present(self, domain: str, token: str, key_authorization: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, token, key_authorization)
        logger.debug("[%s] Wrote challenge file for token %s", domain, token)

    async def cleanup(self, domain: str, token: str, key_authorization: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._remove, token)
