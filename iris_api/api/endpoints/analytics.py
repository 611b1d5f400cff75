from fastapi import APIRouter, BackgroundTasks, HTTPException, status

from iris_api.schemas.answer import QuickActionClickRequest
from iris_api.services.analytics import record_quick_action_click

router = APIRouter(prefix="/iris/analytics", tags=["iris-analytics"])


@router.post("/quick-action-click")
def quick_action_click(payload: QuickActionClickRequest, background_tasks: BackgroundTasks):
    query_id = str(payload.query_id or "").strip()
    suggestion = str(payload.suggestion or "").strip()
    if not query_id or not suggestion:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="queryId and suggestion are required",
        )
    background_tasks.add_task(record_quick_action_click, query_id, suggestion)
    return {"success": True}
