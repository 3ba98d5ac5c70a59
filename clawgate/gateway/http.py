"""HTTP status server: health JSON, queue stats and the WhatsApp pairing page."""

from typing import TYPE_CHECKING, Any

import qrcode
import qrcode.image.svg
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, PlainTextResponse
from loguru import logger

if TYPE_CHECKING:
    from clawgate.gateway.service import Gateway

PAGE_STYLE = (
    "body{font-family:system-ui;display:flex;flex-direction:column;align-items:center;"
    "justify-content:center;min-height:100vh;margin:0;background:#111;color:#fff}"
    "svg{background:#fff;border-radius:12px;width:400px;height:400px}"
)


def render_qr_svg(data: str) -> str:
    """Render data as an inline SVG QR code."""
    image = qrcode.make(data, image_factory=qrcode.image.svg.SvgPathImage, box_size=10, border=2)
    return image.to_string(encoding="unicode")


def _page(body: str, refresh_s: int) -> str:
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        f'<meta http-equiv="refresh" content="{refresh_s}">'
        f"<title>WhatsApp QR</title><style>{PAGE_STYLE}</style></head>"
        f"<body>{body}</body></html>"
    )


def create_app(gateway: "Gateway") -> FastAPI:
    """Create the gateway status app."""

    app = FastAPI(title="clawgate gateway", docs_url=None, redoc_url=None)

    @app.get("/")
    async def status() -> dict[str, Any]:
        return {"status": "ok", "adapters": gateway.channels.get_status()}

    @app.get("/queue")
    async def queue() -> dict[str, Any]:
        return gateway.coordinator.get_global_stats()

    @app.get("/qr", response_class=HTMLResponse)
    async def qr():
        whatsapp = gateway.channels.get_channel("whatsapp")
        latest = getattr(whatsapp, "latest_qr", None)
        if not latest:
            connected = whatsapp is not None and whatsapp.is_connected
            text = "WhatsApp is connected." if connected else "No QR code available. Waiting for WhatsApp..."
            return HTMLResponse(_page(f"<p>{text}</p>", refresh_s=5))

        try:
            svg = render_qr_svg(latest)
        except Exception as e:
            logger.error(f"[HTTP] Failed to render QR code: {e}")
            return PlainTextResponse("Failed to generate QR", status_code=500)
        return HTMLResponse(
            _page(f"<h2>Scan with WhatsApp</h2>{svg}<p>Page refreshes automatically.</p>", refresh_s=10)
        )

    return app
