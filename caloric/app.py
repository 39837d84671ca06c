# caloric/app.py
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

# Load .env BEFORE any caloric imports (monitoring/auth read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from caloric import auth as authmod
from caloric import monitoring
from caloric.agent.loop import AgentService
from caloric.agent.sessions import AgentError, InMemorySessionStore
from caloric.agent.tools import ToolExecutor
from caloric.config import Settings, load_settings
from caloric.connectors.nutrition_client import MockNutritionClient, NutritionClient, UpstreamError
from caloric.db import ResponseCache, init_db, make_engine
from caloric.llm_wrapper import LLMError, TranscriptionError, make_chat_client, make_transcriber
from caloric.orchestrator import E_SEARCH_FAILED, SearchOrchestrator
from caloric.schemas import SearchParams, SessionRequest, TurnRequest, TurnResponse

API_KEY_HEADER = "x-api-key"
DEFAULT_MAX_ITEMS = 100
MAX_MAX_ITEMS = 1000

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


@dataclass
class Services:
    orchestrator: SearchOrchestrator
    agent: AgentService
    closers: List[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self):
        for close in self.closers:
            await close()


async def build_services(settings: Settings) -> Services:
    engine = make_engine(settings.database_url)
    await init_db(engine)

    if settings.mock_upstream:
        client = MockNutritionClient(base_url=settings.mfp_base_url)
    else:
        client = NutritionClient(
            base_url=settings.mfp_base_url,
            authorization=settings.mfp_authorization,
            cookie=settings.mfp_cookie,
            timeout_seconds=settings.request_timeout_seconds,
        )

    orchestrator = SearchOrchestrator(ResponseCache(engine), client, settings.detail_concurrency)
    agent = AgentService(
        store=InMemorySessionStore(idle_seconds=settings.session_idle_seconds),
        executor=ToolExecutor(orchestrator),
        chat=make_chat_client(settings),
        transcriber=make_transcriber(settings),
    )
    monitoring.logger.info(
        "Services ready",
        extra={"database": engine.dialect.name, "mock_upstream": settings.mock_upstream,
               "llm_provider": settings.llm_provider, "model": settings.agent_model},
    )
    return Services(orchestrator=orchestrator, agent=agent, closers=[client.aclose, engine.dispose])


def error_response(status_code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error_code": error_code, "message": message},
    )


def parse_integer(value: Optional[str], fallback: int) -> int:
    if value is None or not value.strip():
        return fallback
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else fallback


def parse_boolean(value: Optional[str], fallback: bool) -> bool:
    if value is None or not value.strip():
        return fallback
    lowered = value.lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    return fallback


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. With `services` given (tests), the app uses them as-is and
    leaves closing them to the caller; otherwise they are built from settings
    on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or await build_services(settings or load_settings())
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="Caloric API", lifespan=lifespan)

    # -----------------------------------------------------------------------
    # Auth + rate-limit middleware (everything but /health and /metrics)
    # -----------------------------------------------------------------------
    @app.middleware("http")
    async def api_key_and_rate_limit_middleware(request: Request, call_next):
        if authmod.is_public_path(request.url.path):
            return await call_next(request)

        api_key = request.headers.get(API_KEY_HEADER)
        if not authmod.is_key_allowed(api_key):
            return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

        allowed, _ = authmod.check_rate_limit(api_key or "")
        if not allowed:
            resp = error_response(429, "E_RATE_LIMIT", "Rate limit exceeded")
            resp.headers["Retry-After"] = "60"
            return resp

        return await call_next(request)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = time.time()
        endpoint = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        except Exception:
            monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
            raise
        finally:
            monitoring.observe_request(start, endpoint, request.method, status)

    @app.exception_handler(AgentError)
    async def agent_error_handler(request: Request, exc: AgentError):
        return error_response(exc.status_code, exc.error_code, str(exc))

    @app.exception_handler(TranscriptionError)
    async def transcription_error_handler(request: Request, exc: TranscriptionError):
        return error_response(exc.status_code, "E_AUDIO_INVALID", str(exc))

    @app.exception_handler(LLMError)
    async def llm_error_handler(request: Request, exc: LLMError):
        monitoring.logger.warning("LLM provider call failed", extra={"path": request.url.path, "error": str(exc)})
        return error_response(502, "E_LLM_FAILED", str(exc))

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        if not monitoring.PROMETHEUS_ENABLED:
            return PlainTextResponse("Prometheus disabled", status_code=404)
        payload, content_type = monitoring.prometheus_metrics_response()
        return Response(content=payload, media_type=content_type)

    @app.get("/search")
    async def search(
        request: Request,
        query: Optional[str] = None,
        offset: Optional[str] = None,
        max_items: Optional[str] = Query(None, alias="maxItems"),
        country_code: Optional[str] = Query(None, alias="countryCode"),
        resource_type: Optional[str] = Query(None, alias="resourceType"),
        include_details: Optional[str] = Query(None, alias="includeDetails"),
    ):
        """
        GET /search?query=...&offset=0&maxItems=100&countryCode=US&resourceType=foods&includeDetails=true
        """
        trimmed = (query or "").strip()
        if not trimmed:
            return error_response(400, "E_QUERY_REQUIRED", "Missing required query parameter: query")

        params = SearchParams(
            query=trimmed,
            offset=max(0, parse_integer(offset, 0)),
            max_items=min(MAX_MAX_ITEMS, max(1, parse_integer(max_items, DEFAULT_MAX_ITEMS))),
            country_code=(country_code or "US").strip().upper() or "US",
            resource_type=(resource_type or "foods").strip().lower() or "foods",
        )
        try:
            result = await request.app.state.services.orchestrator.execute_search(
                params, include_details=parse_boolean(include_details, True)
            )
        except UpstreamError as e:
            monitoring.logger.warning("Upstream search failed", extra={"query": trimmed, "error": str(e)})
            return error_response(502, E_SEARCH_FAILED, str(e))
        except Exception as e:
            monitoring.logger.exception("Search failed", extra={"query": trimmed})
            return error_response(502, E_SEARCH_FAILED, str(e) or e.__class__.__name__)
        return JSONResponse(status_code=200, content=result.model_dump(by_alias=True))

    @app.post("/ai/session")
    async def ai_session(req: SessionRequest, request: Request):
        session = await request.app.state.services.agent.start_session(req.user_id)
        return {"sessionId": session.session_id, "status": session.status.value}

    @app.post("/ai/turn")
    async def ai_turn(req: TurnRequest, request: Request):
        monitoring.logger.info("Received /ai/turn", extra={"session_id": req.session_id, "action": req.action.type})
        outcome = await request.app.state.services.agent.handle_turn(req.session_id, req.user_id, req.action)
        return TurnResponse(status=outcome.status.value, events=outcome.events).model_dump(by_alias=True)

    @app.post("/ai/transcribe")
    async def ai_transcribe(
        request: Request,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        user_id: Optional[str] = Query(None, alias="userId"),
        filename: str = "audio.m4a",
    ):
        audio = await request.body()
        text = await request.app.state.services.agent.transcribe(
            audio, filename=filename, session_id=session_id, user_id=user_id
        )
        return {"text": text}

    return app


app = create_app()


def run():
    settings = load_settings()
    uvicorn.run("caloric.app:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
