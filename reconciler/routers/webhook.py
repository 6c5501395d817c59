"""Inbound payment webhook.

Always answers 200 so the sender never retries into a busy or inconsistent
ledger. Plain text ``ok`` for every kind except ``merge_patients``, which
answers JSON.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from ..pipeline import InvalidTenantError, PipelineRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


def _ok() -> PlainTextResponse:
    return PlainTextResponse("ok")


async def _receive(
    request: Request,
    background_tasks: BackgroundTasks,
    registry: PipelineRegistry,
    tenant_id: Optional[str],
):
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        return _ok()

    try:
        pipeline = registry.get(tenant_id)
    except InvalidTenantError as e:
        logger.warning(f"Webhook dropped: {e}")
        return _ok()

    try:
        outcome = await run_in_threadpool(pipeline.handle_event, payload)
    except Exception:
        logger.exception(f"Unexpected error handling webhook for tenant {pipeline.tenant_id!r}")
        return _ok()

    logger.info(
        f"Webhook tenant={pipeline.tenant_id} kind={outcome.kind!r} "
        f"status={outcome.status.value} payment_id={outcome.payment_id}"
    )
    if outcome.records or outcome.invalidate_patient_id:
        background_tasks.add_task(pipeline.run_followups, outcome)

    if outcome.response is not None:
        return JSONResponse(outcome.response)
    return _ok()


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    registry: PipelineRegistry = Depends(get_registry),
):
    return await _receive(request, background_tasks, registry, None)


@router.post("/webhook/{tenant_id}")
async def receive_tenant_webhook(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    registry: PipelineRegistry = Depends(get_registry),
):
    return await _receive(request, background_tasks, registry, tenant_id)
