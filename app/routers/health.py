from fastapi import APIRouter

from app.services.gestao_click_api import GestaoClickClient

router = APIRouter()


@router.get("/health")
async def health():
    return {"status": "ok", "gestao_click_configured": GestaoClickClient().configured}
