"""
Employee Loans API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router
from .waiting_list import router as waiting_list_router, repayments_router
from .admin import router as admin_router
from .. import __version__
from ..errors import LoanError


# Codes that mean "you may not do this" rather than "not in this state"
FORBIDDEN_CODES = frozenset({"ErrSelfApproval", "ErrUnauthorizedTransition", "ErrUnauthorized"})

CATEGORY_STATUS = {
    "validation": 400,
    "policy": 400,
    "not_found": 404,
    "transition": 409,
    "concurrency": 409,
}


def http_status_for(error: LoanError) -> int:
    if error.code in FORBIDDEN_CODES:
        return 403
    return CATEGORY_STATUS.get(error.category, 400)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Employee Loans API",
        description="Employee loan requests, multi-stage approval, disbursement and payroll repayment",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanError)
    async def loan_error_handler(request: Request, exc: LoanError):
        return JSONResponse(status_code=http_status_for(exc), content=exc.to_dict())

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(waiting_list_router, prefix="/waiting-list", tags=["Waiting List"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])
    app.include_router(admin_router, tags=["Administration"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "employee_loans_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "employee_loans.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
