"""
Dev Chain API Server - FastAPI JSON-RPC Front End

Endpoints:
- POST /           Ethereum JSON-RPC (single request or batch)
- GET  /health     Heartbeat + chain head
- GET  /accounts   Dev accounts and their private keys (dev chain only!)

Point Web3.HTTPProvider / Hardhat / any JSON-RPC client at http://host:port/.
"""

import os
import json
import logging
from typing import Any, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from devchain.chain import DevChain
from devchain.rpc import RPCDispatcher, PARSE_ERROR, INVALID_REQUEST

logger = logging.getLogger("opfactory.api")


# ============================================================
# MODELS
# ============================================================

class RPCRequest(BaseModel):
    jsonrpc: str = Field("2.0", pattern=r"^2\.0$")
    id: Optional[Union[int, str]] = None
    method: str = Field(..., min_length=1)
    params: list[Any] = Field(default_factory=list)


class HealthResponse(BaseModel):
    ok: bool
    chain_id: int
    block_number: int
    block_timestamp: int
    accounts: int
    contracts: list[str]


class DevAccount(BaseModel):
    address: str
    private_key: str
    balance_wei: int


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(chain: Optional[DevChain] = None) -> FastAPI:
    """
    Create the JSON-RPC app around a DevChain (a fresh one if not given).
    """
    chain = chain or DevChain()
    dispatcher = RPCDispatcher(chain)

    app = FastAPI(
        title="opfactory devchain",
        description="In-process EVM-style chain hosting Operation / OperationFactory models.",
        version="0.1.0",
    )
    app.state.chain = chain
    app.state.dispatcher = dispatcher

    # CORS: allow all in dev, restrict via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _dispatch_one(payload: Any) -> dict:
        try:
            req = RPCRequest.model_validate(payload)
        except ValidationError as e:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            return _rpc_error(request_id, INVALID_REQUEST, f"invalid request: {e.errors()[0]['msg']}")
        logger.debug(f"rpc {req.method} {req.params}")
        return dispatcher.handle(req.model_dump())

    # ============================================================
    # ROUTES
    # ============================================================

    @app.post("/")
    async def rpc(request: Request):
        """Ethereum JSON-RPC endpoint."""
        body = await request.body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return JSONResponse(_rpc_error(None, PARSE_ERROR, f"parse error: {e}"))

        if isinstance(payload, list):
            if not payload:
                return JSONResponse(_rpc_error(None, INVALID_REQUEST, "empty batch"))
            return JSONResponse([_dispatch_one(p) for p in payload])
        return JSONResponse(_dispatch_one(payload))

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Heartbeat endpoint."""
        head = chain.latest_block
        return HealthResponse(
            ok=True,
            chain_id=chain.chain_id,
            block_number=head.number,
            block_timestamp=head.timestamp,
            accounts=len(chain.accounts),
            contracts=chain.model_names(),
        )

    @app.get("/accounts", response_model=list[DevAccount])
    async def accounts():
        """Dev accounts. These keys are public; never fund them on a real chain."""
        return [
            DevAccount(address=a, private_key=k, balance_wei=chain.balance(a))
            for a, k in zip(chain.accounts, chain.private_keys)
        ]

    return app


def _rpc_error(request_id, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
