"""Demo FastAPI application with the idempotency filter.

This application demonstrates the idempotency filter in action.
Run with: python demo_app.py

The store is picked from the environment (IDEMPOTENCY_STORAGE_ADAPTER=memory,
redis or sql); see IdempotencyOptions.from_env for every variable.

Then try:
    curl -i -X POST localhost:8000/api/payments \\
        -H 'Idempotency-Key: pay-001' -H 'Content-Type: application/json' \\
        -d '{"amount": 1000}'
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Optional

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel

from idempotency_filter.adapters.asgi import ASGIIdempotencyMiddleware, idempotent
from idempotency_filter.config import IdempotencyOptions
from idempotency_filter.observability.logging import configure_logging
from idempotency_filter.storage import create_store

configure_logging(level="INFO", json_output=False)

# Create FastAPI app
app = FastAPI(
    title="Idempotency Filter Demo",
    description="Demo API showing idempotent request handling",
    version="0.1.0",
)

# Configure the filter
options = IdempotencyOptions.from_env()
store = create_store(options)

app.add_middleware(
    ASGIIdempotencyMiddleware,
    store=store,
    options=options,
)


# Request/Response Models
class PaymentRequest(BaseModel):
    amount: int
    currency: str = "USD"
    description: Optional[str] = None


class PaymentResponse(BaseModel):
    id: str
    status: str
    amount: int
    currency: str
    created_at: str


class OrderRequest(BaseModel):
    product_id: str
    quantity: int
    customer_email: str


class OrderResponse(BaseModel):
    order_id: str
    status: str
    product_id: str
    quantity: int
    total: float
    created_at: str


# Endpoints
@app.get("/")
async def root():
    """Root endpoint - returns API info."""
    return {
        "name": "Idempotency Filter Demo",
        "version": "0.1.0",
        "storage_adapter": options.storage_adapter,
        "conflict_handling": options.conflict_handling.value,
        "endpoints": {
            "POST /api/payments": "Create idempotent payment",
            "POST /api/orders": "Create idempotent order",
            "PUT /api/orders/{order_id}": "Update order (idempotent)",
            "POST /api/notes": "Create note (no idempotency key required)",
        },
        "usage": f"Include '{options.header_name}' header on idempotent endpoints",
    }


@app.post("/api/payments", response_model=PaymentResponse, status_code=201)
@idempotent
async def create_payment(payment: PaymentRequest):
    """Create a payment (idempotent).

    Repeated requests with the same Idempotency-Key are replayed or
    rejected without processing a duplicate payment.
    """
    # Simulate processing time
    await asyncio.sleep(0.1)

    payment_id = f"pay_{int(time.time() * 1000)}"

    return PaymentResponse(
        id=payment_id,
        status="success",
        amount=payment.amount,
        currency=payment.currency,
        created_at=datetime.now(UTC).isoformat(),
    )


@app.post("/api/orders", response_model=OrderResponse, status_code=201)
@idempotent
async def create_order(order: OrderRequest):
    """Create an order (idempotent)."""
    await asyncio.sleep(0.1)

    order_id = f"ord_{int(time.time() * 1000)}"
    total = order.quantity * 99.99  # $99.99 per item

    return OrderResponse(
        order_id=order_id,
        status="confirmed",
        product_id=order.product_id,
        quantity=order.quantity,
        total=total,
        created_at=datetime.now(UTC).isoformat(),
    )


@app.put("/api/orders/{order_id}")
@idempotent
async def update_order(order_id: str, order: OrderRequest):
    """Update an order (idempotent).

    The key is scoped to the route template, so the same key may be
    reused on a different endpoint.
    """
    await asyncio.sleep(0.1)

    return {
        "order_id": order_id,
        "status": "updated",
        "product_id": order.product_id,
        "quantity": order.quantity,
        "updated_at": datetime.now(UTC).isoformat(),
    }


@app.post("/api/notes")
async def create_note(note: dict):
    """Create a note - not marked idempotent, so no key is required."""
    return {"note": note, "created_at": datetime.now(UTC).isoformat()}


if __name__ == "__main__":
    print("=" * 60)
    print("Idempotency Filter Demo Server")
    print("=" * 60)
    print(f"\nStorage adapter: {options.storage_adapter}")
    print("\nStarting server at http://localhost:8000")
    print("\nTry:")
    print("  curl http://localhost:8000")
    print("\nPress Ctrl+C to stop")
    print("=" * 60)
    print()

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
