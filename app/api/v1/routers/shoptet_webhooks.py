import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session, select

from app.api import deps
from app.models.shop import Shop
from app.services.shoptet.webhooks import SIGNATURE_HEADER, receive_webhook, verify_signature
from app.services.snapshots.pipeline_factory import SnapshotPipeline

logger = logging.getLogger("webhooks")

router = APIRouter()


@router.post("/webhook")
async def handle_shoptet_webhook(
    request: Request,
    token: Optional[str] = Query(default=None),
    x_shop_token: Optional[str] = Header(default=None, alias="X-Shop-Token"),
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    session: Session = Depends(deps.get_session),
    pipeline: SnapshotPipeline = Depends(deps.get_pipeline),
) -> Dict[str, Any]:
    """
    Уведомление платформы о задании экспорта.
    Магазин определяется по token (query) или заголовку X-Shop-Token,
    подпись - HMAC-SHA1 сырого тела ключом вебхуков магазина.
    """
    raw_body = await request.body()
    # БД и опрос платформы блокирующие, поэтому выполняются в пуле потоков
    return await run_in_threadpool(accept_webhook, raw_body, token or x_shop_token, signature, session, pipeline)


def accept_webhook(
    raw_body: bytes,
    shop_token: Optional[str],
    signature: Optional[str],
    session: Session,
    pipeline: SnapshotPipeline,
) -> Dict[str, Any]:
    if not shop_token:
        raise HTTPException(status_code=401, detail="Missing shop token.")

    shop = session.exec(select(Shop).where(Shop.webhook_token == shop_token)).first()
    if shop is None:
        raise HTTPException(status_code=404, detail="Shop not found for provided token.")
    if not shop.webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook signature key not configured.")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing webhook signature.")

    if not verify_signature(shop.webhook_secret, raw_body, signature):
        logger.warning(f"[Webhook] Неверная подпись вебхука: shop={shop.id}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    job = receive_webhook(
        pipeline.session_factory,
        pipeline.poller,
        lambda job_id: pipeline.queue.download(job_id, True, True, 0),
        shop,
        payload,
    )
    return {
        "ok": True,
        "job": {"id": job.id, "job_id": job.job_id, "status": job.status.value},
    }
