import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config
from .config import PipelineConfig
from .models import MessageRecord
from .nodes.analysis_client import OllamaAnalysisClient
from .nodes.exact_rules import resolve_rules
from .nodes.guideline_index import GuidelineIndex, load_guidelines
from .pipeline import result_to_dict, run_pipeline

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(
    title="Compliance Analyzer",
    description="Scores chat transcripts against behavioral guidelines",
)

RULES = config.load_rules_config()

analysis_client = OllamaAnalysisClient(
    base_url=config.OLLAMA_BASE_URL,
    model_name=config.MODEL_NAME,
    timeout_s=config.ANALYSIS_TIMEOUT_S,
    max_retries=config.ANALYSIS_MAX_RETRIES,
)


class GuidelineIn(BaseModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    category: str
    weight: int = 1
    examples: list[str] = []
    counter_examples: list[str] = []
    is_active: bool = True


class MessageIn(BaseModel):
    text: str
    timestamp_utc: datetime
    reply_time_minutes: float = 0.0
    counterparty_id: str = ""
    price_amount: Optional[float] = None
    is_price_item: bool = False
    was_purchased: Optional[bool] = None


class AnalyzeRequest(BaseModel):
    guidelines: list[GuidelineIn]
    messages: list[MessageIn]
    batch_size: Optional[int] = None


class AnalyzeResponse(BaseModel):
    status: str
    partial: bool
    score: dict
    grammar: Optional[dict] = None
    categories: list[dict]
    batches: dict
    failures: list[dict]
    warnings: list[str]
    stats: dict
    report: dict


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body_text = (await request.body()).decode(errors="replace")
    log.error("422 validation error on %s %s", request.method, request.url.path)
    log.error("Request body: %s", body_text[:2000])
    log.error("Validation errors: %s", exc.errors())
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "body_preview": body_text[:500]},
    )


def _to_records(messages: list[MessageIn]) -> list[MessageRecord]:
    records = []
    for i, m in enumerate(messages):
        try:
            records.append(MessageRecord(**m.model_dump()))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"messages[{i}]: {e}")
    return records


@app.post("/analyze", response_model=AnalyzeResponse)
async def analyze(request: AnalyzeRequest):
    log.info("POST /analyze -- %d guideline(s), %d message(s)",
             len(request.guidelines), len(request.messages))

    records = _to_records(request.messages)
    guidelines, warnings = load_guidelines(
        [g.model_dump() for g in request.guidelines], RULES.category_labels,
    )
    index = GuidelineIndex(guidelines)
    rules, rule_warnings = resolve_rules(index, RULES.exact_rules)

    pipeline_config = PipelineConfig()
    if request.batch_size:
        pipeline_config.batch_size = request.batch_size

    result = await run_pipeline(
        records, index, analysis_client,
        config=pipeline_config,
        rules=rules,
        warnings=warnings + rule_warnings,
    )
    return AnalyzeResponse(**result_to_dict(result))


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "model": config.MODEL_NAME,
        "ollama_reachable": await analysis_client.health(),
    }
