"""FastAPI web interface for the mail assistant."""

import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from mail_assistant.config import AIProviderConfig, AppConfig
from mail_assistant.errors import (
    AIProviderError,
    GenerationTimeoutError,
    NoProviderAvailableError,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    RateLimitedError,
    RetrievalError,
)
from mail_assistant.mail_loader import load_mailbox
from mail_assistant.models import (
    GenerationRequest,
    ResponseLength,
    ResponseTone,
    WritingStyle,
)
from mail_assistant.orchestrator import ProviderOrchestrator
from mail_assistant.prompts import build_response_prompt
from mail_assistant.repository import InMemoryMailRepository
from mail_assistant.retrieval import RetrievalEngine
from mail_assistant.services import build_orchestrator, build_retrieval_engine
from mail_assistant.style import analyze_style

logger = logging.getLogger(__name__)

_config = AppConfig()


def _load_repository(mailbox_dir: str) -> InMemoryMailRepository:
    repository = InMemoryMailRepository()
    if Path(mailbox_dir).is_dir():
        repository.add_many(load_mailbox(mailbox_dir))
    else:
        logger.warning("Mailbox %s not found, starting with no mail", mailbox_dir)
    return repository


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator, mail repository and retrieval engine on startup."""
    repository = _load_repository(_config.mailbox_dir)
    application.state.orchestrator = build_orchestrator(_config)
    application.state.repository = repository
    application.state.retrieval = build_retrieval_engine(_config, repository)
    application.state.style = analyze_style(repository.all_emails(), _config.style)
    logger.info("Mail assistant started (%d emails loaded)", len(repository))
    yield


app = FastAPI(
    title="Mail Assistant",
    lifespan=lifespan,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
)

router = APIRouter(prefix="/api/v1")


def _status_for(exc: AIProviderError) -> int:
    if isinstance(exc, ProviderNotFoundError):
        return 404
    if isinstance(exc, RateLimitedError):
        return 429
    if isinstance(exc, (NoProviderAvailableError, ProviderNotConfiguredError)):
        return 503
    if isinstance(exc, GenerationTimeoutError):
        return 504
    return 502


@app.exception_handler(AIProviderError)
async def _provider_error_handler(request: Request, exc: AIProviderError):
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=_status_for(exc),
        content={"detail": str(exc)},
        headers=headers,
    )


@app.exception_handler(RetrievalError)
async def _retrieval_error_handler(request: Request, exc: RetrievalError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def get_orchestrator(request: Request) -> ProviderOrchestrator:
    """FastAPI dependency — return the provider orchestrator from app state."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized.")
    return orchestrator


def get_retrieval(request: Request) -> RetrievalEngine:
    """FastAPI dependency — return the retrieval engine from app state."""
    engine = getattr(request.app.state, "retrieval", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Retrieval engine not initialized.")
    return engine


def get_repository(request: Request) -> InMemoryMailRepository | None:
    return getattr(request.app.state, "repository", None)


def get_style(request: Request) -> WritingStyle | None:
    return getattr(request.app.state, "style", None)


class HealthResponse(BaseModel):
    status: str
    providers: int
    healthy_providers: int
    emails: int


class ProviderHealthResponse(BaseModel):
    is_healthy: bool
    average_response_time: float
    consecutive_failures: int
    consecutive_successes: int
    last_failure: datetime | None = None


class ProviderInfo(BaseModel):
    id: str
    name: str
    priority: int
    is_fallback: bool
    max_retries: int
    active: bool
    health: ProviderHealthResponse | None = None


class ValidateResponse(BaseModel):
    id: str
    valid: bool
    error: str | None = None


class AIConfigBody(BaseModel):
    active_provider_id: str | None = None
    fallback_provider_ids: list[str] = Field(default_factory=list)
    default_model: str | None = None
    default_temperature: float = 0.7
    default_max_tokens: int = 2048
    enable_streaming: bool = True
    timeout_seconds: float = 60.0


class GenerateBody(BaseModel):
    prompt: str = Field(min_length=1)
    system_prompt: str | None = None
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    provider_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            prompt=self.prompt,
            system_prompt=self.system_prompt,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


class GenerateResponse(BaseModel):
    text: str
    model: str
    tokens_used: int
    finish_reason: str


class DraftBody(BaseModel):
    email_id: str = Field(min_length=1)
    tone: ResponseTone = ResponseTone.AUTO
    length: ResponseLength = ResponseLength.MEDIUM
    provider_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class DraftResponse(BaseModel):
    text: str
    model: str
    purpose: str
    examples: int
    thread_messages: int
    style_applied: bool


class SimilarBody(BaseModel):
    query: str | None = None
    email_id: str | None = None
    limit: int | None = Field(default=None, gt=0)


class SimilarResult(BaseModel):
    email_id: str
    subject: str | None
    sender: str
    sent_date: datetime | None
    similarity: float
    matched_text: str


class SimilarResponse(BaseModel):
    results: list[SimilarResult]


class IndexResponse(BaseModel):
    status: str
    indexed: int
    total: int


def _provider_info(orchestrator: ProviderOrchestrator, provider_id: str) -> ProviderInfo:
    registration = orchestrator.get_registration(provider_id)
    if registration is None:
        raise ProviderNotFoundError(provider_id)
    health = orchestrator.get_health(provider_id)
    return ProviderInfo(
        id=provider_id,
        name=registration.provider.name,
        priority=registration.priority,
        is_fallback=registration.is_fallback,
        max_retries=registration.max_retries,
        active=orchestrator.get_configuration().active_provider_id == provider_id,
        health=ProviderHealthResponse(**dataclasses.asdict(health)) if health else None,
    )


@router.get("/health", response_model=HealthResponse)
async def api_health(
    orchestrator=Depends(get_orchestrator),
    repository=Depends(get_repository),
):
    providers = orchestrator.get_registered_providers()
    healthy = [
        p for p in providers if (h := orchestrator.get_health(p.id)) and h.is_healthy
    ]
    if not providers:
        status = "unavailable"
    elif len(healthy) == len(providers):
        status = "healthy"
    else:
        status = "degraded"
    return HealthResponse(
        status=status,
        providers=len(providers),
        healthy_providers=len(healthy),
        emails=len(repository) if repository is not None else 0,
    )


@router.get("/providers", response_model=list[ProviderInfo])
async def api_providers(orchestrator=Depends(get_orchestrator)):
    return [
        _provider_info(orchestrator, p.id)
        for p in orchestrator.get_registered_providers()
    ]


@router.post("/providers/{provider_id}/validate", response_model=ValidateResponse)
async def api_validate_provider(provider_id: str, orchestrator=Depends(get_orchestrator)):
    error = None
    try:
        valid = await orchestrator.validate_configuration(provider_id)
    except ProviderNotFoundError:
        raise
    except AIProviderError as exc:
        valid = False
        error = str(exc)
    return ValidateResponse(id=provider_id, valid=valid, error=error)


@router.post("/providers/{provider_id}/reset-health", response_model=ProviderInfo)
async def api_reset_health(provider_id: str, orchestrator=Depends(get_orchestrator)):
    if orchestrator.get_registration(provider_id) is None:
        raise ProviderNotFoundError(provider_id)
    orchestrator.reset_health(provider_id)
    return _provider_info(orchestrator, provider_id)


@router.get("/config/ai", response_model=AIConfigBody)
async def api_get_ai_config(orchestrator=Depends(get_orchestrator)):
    return AIConfigBody(**orchestrator.get_configuration().model_dump())


@router.put("/config/ai", response_model=AIConfigBody)
async def api_put_ai_config(body: AIConfigBody, orchestrator=Depends(get_orchestrator)):
    try:
        configuration = AIProviderConfig(**body.model_dump())
    except ValidationError as exc:
        raise HTTPException(
            status_code=422, detail=exc.errors(include_url=False, include_context=False)
        )
    orchestrator.set_configuration(configuration)
    return AIConfigBody(**configuration.model_dump())


@router.post("/generate", response_model=GenerateResponse)
async def api_generate(body: GenerateBody, orchestrator=Depends(get_orchestrator)):
    response = await orchestrator.generate(
        body.to_request(), provider_id=body.provider_id, timeout=body.timeout
    )
    return GenerateResponse(
        text=response.text,
        model=response.model,
        tokens_used=response.tokens_used,
        finish_reason=response.finish_reason,
    )


@router.post("/generate/stream")
async def api_generate_stream(body: GenerateBody, orchestrator=Depends(get_orchestrator)):
    # Availability errors and failures before the first chunk surface
    # here, before any bytes are sent, and map to an error status.
    chunks = await orchestrator.stream(
        body.to_request(), provider_id=body.provider_id, timeout=body.timeout
    )
    try:
        head = [await anext(chunks)]
    except StopAsyncIteration:
        head = []

    async def _body() -> AsyncIterator[str]:
        for chunk in head:
            yield chunk
        try:
            async for chunk in chunks:
                yield chunk
        except AIProviderError as exc:
            # Headers are already sent; the stream just ends.
            logger.error("Stream ended early: %s", exc)

    return StreamingResponse(_body(), media_type="text/plain; charset=utf-8")


@router.post("/draft", response_model=DraftResponse)
async def api_draft(
    body: DraftBody,
    orchestrator=Depends(get_orchestrator),
    engine=Depends(get_retrieval),
    repository=Depends(get_repository),
    style=Depends(get_style),
):
    email = await repository.load_email(body.email_id) if repository else None
    if email is None:
        raise HTTPException(status_code=404, detail=f"Email '{body.email_id}' not found.")

    context = await engine.assemble_context(
        email, style=style, tone=body.tone, length=body.length
    )
    response = await orchestrator.generate(
        GenerationRequest(prompt=build_response_prompt(context)),
        provider_id=body.provider_id,
        timeout=body.timeout,
    )
    return DraftResponse(
        text=response.text,
        model=response.model,
        purpose=context.purpose.value,
        examples=len(context.rag_examples),
        thread_messages=len(context.thread_context),
        style_applied=style is not None,
    )


@router.post("/similar", response_model=SimilarResponse)
async def api_similar(
    body: SimilarBody,
    engine=Depends(get_retrieval),
    repository=Depends(get_repository),
):
    if body.email_id:
        email = await repository.load_email(body.email_id) if repository else None
        if email is None:
            raise HTTPException(status_code=404, detail=f"Email '{body.email_id}' not found.")
        results = await engine.retrieve_similar_to(email, limit=body.limit)
    elif body.query:
        results = await engine.retrieve_similar(body.query, limit=body.limit)
    else:
        raise HTTPException(status_code=422, detail="Provide either 'query' or 'email_id'.")

    return SimilarResponse(
        results=[
            SimilarResult(
                email_id=r.email.id,
                subject=r.email.subject,
                sender=r.email.sender_email,
                sent_date=r.email.sent_date,
                similarity=r.similarity,
                matched_text=r.matched_text,
            )
            for r in results
        ]
    )


@router.post("/index", response_model=IndexResponse)
async def api_index(
    request: Request,
    engine=Depends(get_retrieval),
    repository=Depends(get_repository),
):
    folder = _config.mailbox_dir
    if not Path(folder).is_dir():
        raise HTTPException(status_code=404, detail=f"Mailbox not found: {folder}")

    emails = load_mailbox(folder)
    if not emails:
        return IndexResponse(status="no_emails", indexed=0, total=0)

    if repository is not None:
        repository.add_many(emails)
        request.app.state.style = analyze_style(repository.all_emails(), _config.style)
    indexed = await engine.index_many(emails)
    return IndexResponse(status="ok", indexed=indexed, total=len(emails))


app.include_router(router)


def serve(config: AppConfig | None = None) -> None:
    """Run the API with uvicorn."""
    cfg = config or _config
    uvicorn.run(
        app,
        host=cfg.server.host,
        port=cfg.server.port,
        ssl_certfile=cfg.server.ssl_certfile,
        ssl_keyfile=cfg.server.ssl_keyfile,
    )
