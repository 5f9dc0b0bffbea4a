from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from powermetrics_mcp import mcp_app

app = FastAPI(title="powermetrics-mcp-shim")

"""Minimal FastAPI shim over the MCP tool implementations.
No parsing logic lives here; every route delegates to mcp_app.
"""


class ParseRequest(BaseModel):
    text: str
    sample_window_ms: int = 0
    interrupt_association: Optional[str] = None


class ParseResponse(BaseModel):
    snapshots: int
    final: Optional[Dict[str, Any]] = None
    gpu_processes: List[Dict[str, Any]] = []
    processes: List[Dict[str, Any]] = []


@app.get("/")
def root():
    return {"status": "ok", "service": "powermetrics-mcp-shim"}


@app.get("/healthz")
def healthz():
    return mcp_app.healthz()


@app.get("/sample/latest")
def sample_latest(section: Optional[str] = None):
    res = mcp_app._latest_sample_impl(section)
    if 'error' in res:
        code = 400 if res['error'] == 'unknown_section' else 404
        raise HTTPException(status_code=code, detail=res['error'])
    return res


@app.post("/parse", response_model=ParseResponse)
def parse(body: ParseRequest):
    res = mcp_app._parse_text_impl(body.text, body.sample_window_ms, body.interrupt_association)
    if 'error' in res:
        raise HTTPException(status_code=400, detail=res.get('detail') or res['error'])
    return res
