"""
Search Server

FastAPI surface for the search pipeline.

Endpoints:
- POST /search: Answer a question against one tenant's workbook
- GET /health: Health check
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ..common.config import LedgerLensConfig, load_config
from .pipeline import SearchInputError, SearchPipeline, build_pipeline

logger = logging.getLogger("ledgerlens.retriever.server")


# Global state
config: Optional[LedgerLensConfig] = None
pipeline: Optional[SearchPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, pipeline

    logger.info("Starting up...")
    load_dotenv()

    # Tests may install a pipeline before startup
    if pipeline is None:
        config = load_config()
        pipeline = build_pipeline(config)
        logger.info(
            "Pipeline ready (index backend: %s, LLM available: %s)",
            config.index.backend, pipeline.synthesizer.has_llm,
        )

    yield

    logger.info("Shutting down...")


app = FastAPI(
    title="LedgerLens Search",
    description="Question answering over tabular financial data",
    version="0.1.0",
    lifespan=lifespan,
)


class SearchRequest(BaseModel):
    """Search request"""
    tenant_id: str
    workbook_id: str
    query: str
    top_k: Optional[int] = None


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "ledgerlens",
        "initialized": pipeline is not None,
        "llm_available": pipeline.synthesizer.has_llm if pipeline else False,
    }


@app.post("/search")
async def search(request: SearchRequest):
    """Run the search pipeline"""
    if not pipeline:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    try:
        response = await pipeline.search(
            tenant_id=request.tenant_id,
            workbook_id=request.workbook_id,
            query=request.query,
            top_k=request.top_k,
        )
    except SearchInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return response.to_dict()


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the search server"""
    import uvicorn

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    server_config = load_config().server
    logger.info("Starting server on %s:%d", server_config.host, server_config.port)
    uvicorn.run(
        "ledgerlens.retriever.server:app",
        host=server_config.host,
        port=server_config.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
