from fastapi import FastAPI, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from handlers.payments import handle_payment_webhook, process_booking_payment_by_token
from handlers.results import ErrorKind
from handlers.trips import record_location, device_matches
from models.payment import Payment, PaymentStatus
from services import broadcast
from services.payos import render_qr_png

app = FastAPI()

HTTP_STATUS = {
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.DOMAIN: 400,
}


class LocationPing(BaseModel):
    latitude: float
    longitude: float


@app.post("/payos/webhook")
async def payos_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("PayOS: webhook body is not JSON")
        return {"success": False, "message": "Invalid payload"}

    result = handle_payment_webhook(db, payload)
    if not result.ok:
        # handled failures still answer 200 so the provider stops retrying
        logger.warning(f"PayOS webhook not applied: {result.message}")
    return {"success": result.ok, "message": result.message}


@app.get("/payments/{token}")
async def pay_by_token(token: str, db: Session = Depends(get_db)):
    result = process_booking_payment_by_token(db, token)
    if not result.ok:
        return HTMLResponse(
            f"<html><body><h1>Payment unavailable</h1><p>{result.message}</p></body></html>",
            status_code=HTTP_STATUS[result.error],
        )
    return RedirectResponse(result.value.checkout_url, status_code=303)


@app.get("/payments/{order_code}/qr.png")
async def payment_qr(order_code: int, db: Session = Depends(get_db)):
    payment = db.query(Payment).filter(
        Payment.order_code == order_code,
        Payment.status == PaymentStatus.PENDING,
    ).first()
    if not payment or not payment.qr_code:
        raise HTTPException(status_code=404, detail="Payment not found")
    return Response(content=render_qr_png(payment.qr_code), media_type="image/png")


@app.post("/cars/{car_id}/location")
async def car_location(car_id: int, ping: LocationPing, x_device_serial: str = Header(...),
                       db: Session = Depends(get_db)):
    if not device_matches(db, car_id, x_device_serial):
        raise HTTPException(status_code=403, detail="Unknown device")
    result = record_location(db, car_id, ping.latitude, ping.longitude)
    if not result.ok:
        raise HTTPException(status_code=HTTP_STATUS[result.error], detail=result.message)
    point = result.value
    return {
        "tracked": point is not None,
        "cumulative_distance": point.cumulative_distance if point is not None else None,
    }


@app.websocket("/ws/cars/{car_id}")
async def car_updates(ws: WebSocket, car_id: int):
    topic = broadcast.car_topic(car_id)
    await ws.accept()
    broadcast.subscribe(topic, ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcast.unsubscribe(topic, ws)


@app.get("/payment_success", response_class=HTMLResponse)
async def payment_success():
    return "<html><body><h1>Payment successful!</h1><p>Thank you for using our service.</p></body></html>"


@app.get("/payment_fail", response_class=HTMLResponse)
async def payment_fail():
    return "<html><body><h1>Payment failed.</h1><p>Please try again or contact support.</p></body></html>"
