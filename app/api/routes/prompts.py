import logging

from fastapi import APIRouter, Depends, Response

from app.adapters.llm.base import AbstractLLMClient
from app.adapters.llm.factory import create_llm_client
from app.core.usage_limit import (
    consume_quota,
    get_usage_limit_service,
    resolve_request_ip,
    usage_headers,
)
from app.schemas.prompts import (
    GenerateDraftRequest,
    GenerateDraftResponse,
    ImprovePromptRequest,
    ImprovePromptResponse,
)
from app.schemas.usage import UsageIncrementResult
from app.services.prompt_service import PromptService
from app.services.usage_limit_service import UsageLimitService
from app.utils.ip_utils import IPAddressInfo, hash_ip_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prompts", tags=["Prompts"])

_llm_client: AbstractLLMClient | None = None


def get_llm_client() -> AbstractLLMClient:
    """Process-wide LLM client, created on first use."""
    global _llm_client
    if _llm_client is None:
        _llm_client = create_llm_client()
    return _llm_client


def get_prompt_service(llm: AbstractLLMClient = Depends(get_llm_client)) -> PromptService:
    return PromptService(llm=llm)


async def _refund(
    service: UsageLimitService,
    ip: IPAddressInfo,
    increment: UsageIncrementResult,
) -> None:
    if increment.degraded:
        return
    rollback = await service.rollback_usage(ip.limit_key)
    logger.info(
        "usage.refunded",
        extra={
            "ip_hash": hash_ip_address(ip.limit_key),
            "success": rollback.success,
            "usage_count": rollback.usage_count,
        },
    )


@router.post("/improve", response_model=ImprovePromptResponse)
async def improve_prompt(
    body: ImprovePromptRequest,
    response: Response,
    ip: IPAddressInfo = Depends(resolve_request_ip),
    usage: UsageLimitService = Depends(get_usage_limit_service),
    prompts: PromptService = Depends(get_prompt_service),
) -> ImprovePromptResponse:
    """Rewrite a prompt; consumes one unit of the caller's quota.

    Returns 429 when the quota is exhausted. A provider failure gives the
    unit back before the error is returned.
    """
    prompt = prompts.validate_prompt(body.prompt)
    increment = await consume_quota(usage, ip)
    try:
        improved = await prompts.improve_prompt(prompt)
    except Exception:
        await _refund(usage, ip, increment)
        raise

    response.headers.update(usage_headers(increment, usage.max_usage))
    return ImprovePromptResponse(
        improved_prompt=improved,
        usage_count=increment.usage_count,
        remaining_count=increment.remaining_count,
    )


@router.post("/generate", response_model=GenerateDraftResponse)
async def generate_draft(
    body: GenerateDraftRequest,
    response: Response,
    ip: IPAddressInfo = Depends(resolve_request_ip),
    usage: UsageLimitService = Depends(get_usage_limit_service),
    prompts: PromptService = Depends(get_prompt_service),
) -> GenerateDraftResponse:
    """Expand a research idea into an abstract or introduction (gated)."""
    idea = prompts.validate_idea(body.idea)
    increment = await consume_quota(usage, ip)
    try:
        content = await prompts.generate_draft(idea, body.persona)
    except Exception:
        await _refund(usage, ip, increment)
        raise

    response.headers.update(usage_headers(increment, usage.max_usage))
    return GenerateDraftResponse(
        content=content,
        usage_count=increment.usage_count,
        remaining_count=increment.remaining_count,
    )
