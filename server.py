from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from settlement.db_helpers import get_session_factory
from settlement.intent_service import IntentService

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[IntentService] = None


def get_intent_service() -> IntentService:
    global _service
    if _service is None:
        _service = IntentService(get_session_factory())
    return _service


class IntentRequest(BaseModel):
    family_id: str
    clinic_id: str
    fiat_amount: Decimal
    input_method: str
    input_tx_ref: Optional[str] = None
    currency: Optional[str] = None


class TopUpRequest(BaseModel):
    user_id: str
    amount: Decimal
    asset: str


@app.post("/intents")
def create_intent(req: IntentRequest, service: IntentService = Depends(get_intent_service)):
    result = service.submit_intent(req.model_dump())
    if result["status"] == "error":
        raise HTTPException(status_code=400, detail=result["message"])
    return result


@app.post("/intents/{intent_id}/process")
def process_intent(intent_id: str, service: IntentService = Depends(get_intent_service)):
    # failures are part of the payload; the intent row carries failure_reason
    result = service.process_intent({"intent_id": intent_id})
    if result.get("status") == "not_found":
        raise HTTPException(status_code=404, detail=result["error"])
    if result.get("status") == "already_processing":
        raise HTTPException(status_code=409, detail="Intent is already being processed")
    return result


@app.get("/intents/{intent_id}")
def get_intent(intent_id: str, service: IntentService = Depends(get_intent_service)):
    result = service.intent_status({"intent_id": intent_id})
    if result["status"] == "not_found":
        raise HTTPException(status_code=404, detail=result["message"])
    if result["status"] == "error":
        raise HTTPException(status_code=500, detail=result["message"])
    return result


@app.post("/wallets/top-up")
def top_up_wallet(req: TopUpRequest, service: IntentService = Depends(get_intent_service)):
    result = service.top_up_wallet(req.model_dump())
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
