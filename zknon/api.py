import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, configure_logging
from .errors import InternalError, LedgerServiceError, ValidationError
from .models import (
    DepositRequest,
    DepositResponse,
    GenerateProofRequest,
    GenerateProofResponse,
    HealthResponse,
    HistoryResponse,
    ProofListResponse,
    ProofSummary,
    WithdrawalReceipt,
    WithdrawalRequest,
)
from .service import LedgerService
from .settlement import PoolKeypair, PoolSettlementClient, SolanaRPC
from .storage import InMemoryStorage, LedgerStorage

logger = logging.getLogger(__name__)


def build_settlement(settings: Settings) -> Optional[PoolSettlementClient]:
    if not settings.settlement_enabled:
        logger.warning("ZKNON_POOL_SECRET_KEY_BASE58 is not set. Withdrawals will not send funds.")
        return None
    keypair = PoolKeypair.from_base58(settings.pool_secret_key)
    if settings.pool_pubkey and settings.pool_pubkey != keypair.address:
        raise ValueError(
            f"ZKNON_POOL_PUBKEY {settings.pool_pubkey} does not match the pool secret key ({keypair.address})"
        )
    logger.info("Loaded pool keypair: %s", keypair.address)
    rpc = SolanaRPC(settings.rpc_endpoint, api_key=settings.rpc_api_key)
    return PoolSettlementClient(keypair, rpc, confirm_timeout=settings.confirm_timeout)


def build_storage(settings: Settings) -> LedgerStorage:
    if settings.database_url:
        from .storage_postgres import PostgresStorage
        return PostgresStorage(settings.database_url)
    logger.warning("ZKNON_DATABASE_URL is not set; using in-memory storage")
    return InMemoryStorage()


def build_service(settings: Settings) -> LedgerService:
    return LedgerService(
        storage=build_storage(settings),
        settlement=build_settlement(settings),
        history_limit=settings.history_limit,
        settlement_timeout=settings.settlement_timeout,
        settle_inline=settings.settle_inline,
    )


def _http_error(e: LedgerServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


def create_app(settings: Optional[Settings] = None, service: Optional[LedgerService] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    service = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        connect = getattr(service.storage, "connect", None)
        if connect is not None:
            await connect()
        for tx in await service.withdrawals.find_stuck_pending():
            logger.warning(
                "Withdrawal %s on %s is stuck PENDING (amount %s to %s, created %s); "
                "funds stay reserved until reconciled",
                tx.id, tx.ledger_entry_id, tx.amount, tx.recipient, tx.created_at.isoformat(),
            )
        logger.info("Pool address: %s", _pool_address())
        yield
        await service.withdrawals.shutdown(settings.drain_timeout)
        if service.settlement is not None:
            await service.settlement.close()
        await service.storage.close()

    app = FastAPI(
        title="ZKNON Ledger API",
        description="Note-bound balances with reservation-based payouts from a custodial pool",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    def _pool_address() -> Optional[str]:
        if service.settlement is not None:
            return service.settlement.pool_address
        return settings.pool_pubkey

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
        error = ValidationError("Invalid request", details={"errors": errors})
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": error.to_dict()})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = InternalError("internal_error")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": error.to_dict()})

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        return HealthResponse(ok=True, pool_address=_pool_address())

    @app.post(
        "/api/zkproofs/generate",
        response_model=GenerateProofResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Proofs"],
    )
    async def generate_proof(request: GenerateProofRequest) -> GenerateProofResponse:
        try:
            return await service.issue(request.owner_key)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/api/zkproofs", response_model=ProofListResponse, tags=["Proofs"])
    async def list_proofs(wallet: Optional[str] = None) -> ProofListResponse:
        try:
            entries = await service.list_proofs(wallet)
        except LedgerServiceError as e:
            raise _http_error(e)
        return ProofListResponse(proofs=[ProofSummary.from_entry(e) for e in entries])

    @app.post("/api/deposits", response_model=DepositResponse, tags=["Deposits"])
    async def record_deposit(request: DepositRequest) -> DepositResponse:
        try:
            entry = await service.record_deposit(
                request.owner_key, request.identifier, request.amount, request.settlement_ref
            )
        except LedgerServiceError as e:
            raise _http_error(e)
        return DepositResponse.from_entry(entry)

    @app.post("/api/withdrawals", response_model=WithdrawalReceipt, tags=["Withdrawals"])
    async def initiate_withdrawal(request: WithdrawalRequest) -> WithdrawalReceipt:
        try:
            return await service.initiate_withdrawal(
                request.identifier, request.secret_note, request.amount, request.recipient
            )
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/api/history", response_model=HistoryResponse, tags=["History"])
    async def get_history(wallet: Optional[str] = None) -> HistoryResponse:
        try:
            return HistoryResponse(history=await service.history_items(wallet))
        except LedgerServiceError as e:
            raise _http_error(e)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging(app.state.settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
