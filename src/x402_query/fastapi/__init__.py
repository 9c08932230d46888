"""
FastAPI middleware for x402 payment requirements.

Usage:   from x402_query.fastapi.middleware import require_payment

Example:
    from fastapi import FastAPI
    from x402_query.facilitator import FacilitatorClient
    from x402_query.fastapi.middleware import require_payment
    from x402_query.registry import PaymentRequirementRegistry

    registry = PaymentRequirementRegistry(pay_to="0x...", price="$0.01")
    registry.register("/api/chat", "Private query")

    app = FastAPI()
    app.middleware("http")(require_payment(registry, FacilitatorClient()))
"""
