"""HTML rendering for customer emails."""

from html import escape


SHOP_NAME = "Altea Bike Shop"

LOCATIONS: dict[str, dict[str, str]] = {
    "sucursal_altea": {"name": "Altea Bike Shop", "address": "Calle la Tella 2, Altea 03590"},
    "sucursal_albir": {"name": "Albir Cycling", "address": "Av del Albir 159, El Albir"},
}
DEFAULT_LOCATION = "sucursal_altea"

FOOTER = """
<hr style="margin-top:30px;border:none;border-top:1px solid #ddd;"/>
<div style="font-size:13px;color:#444;line-height:1.6;margin-top:15px;">
  <p style="font-weight:bold;margin-bottom:5px;">Altea Bike Shop</p>
  <p>Calle la Tella 2, Altea 03590</p>
  <p>+34 604 535 972</p>
  <p>alteabikeshop@gmail.com</p>
  <p>Monday to Friday: 10:00 - 18:00 / Saturday: 10:00 - 14:00</p>
  <br/>
  <p style="font-weight:bold;margin-bottom:5px;">Albir Cycling</p>
  <p>Av del Albir 159, El Albir</p>
  <p>info@albir-cycling.com</p>
  <p>Monday to Friday: 10:00 - 18:00 / Saturday: 10:00 - 14:00</p>
</div>
"""


def format_cents(cents) -> str:
    if cents is None:
        return "-"
    try:
        return f"{int(cents) / 100:.2f}"
    except (TypeError, ValueError):
        return "-"


def resolve_location(location) -> dict[str, str]:
    """Accept a location id, or an object with name/address; fall back to the main shop."""

    if isinstance(location, str) and location in LOCATIONS:
        return LOCATIONS[location]
    if isinstance(location, dict) and location.get("name"):
        return {"name": str(location["name"]), "address": str(location.get("address") or "")}
    return LOCATIONS[DEFAULT_LOCATION]


def _bike_rows(bikes) -> str:
    cell = 'style="padding:8px;border:1px solid #ddd;"'
    if not isinstance(bikes, list) or not bikes:
        return f'<tr><td colspan="4" {cell}>-</td></tr>'
    rows = []
    for bike in bikes:
        if not isinstance(bike, dict):
            continue
        rows.append(
            "<tr>"
            f"<td {cell}>{escape(str(bike.get('model') or bike.get('title') or bike.get('name') or 'Bike'))}</td>"
            f"<td {cell}>{escape(str(bike.get('category') or '-'))}</td>"
            f"<td {cell}>{escape(str(bike.get('size') or '-'))}</td>"
            f"<td {cell}>{escape(str(bike.get('quantity') or 1))}</td>"
            "</tr>"
        )
    return "".join(rows)


def render_reservation_confirmed(payload: dict) -> tuple[str, str]:
    """Return `(subject, html)` for a confirmed reservation."""

    subject = f"Reservation confirmed – {SHOP_NAME}"
    location = resolve_location(payload.get("pickup_location"))
    location_text = f"{location['name']} – {location['address']}" if location["address"] else location["name"]
    insurance = "Included" if payload.get("insurance") else "Not included"

    def field(key: str) -> str:
        return escape(str(payload.get(key) or "-"))

    html = f"""
<div style="font-family:Arial, sans-serif; max-width:650px; margin:auto; color:#111;">
  <h2 style="border-bottom:2px solid #000;padding-bottom:10px;">{escape(subject)}</h2>
  <p>Hello <b>{escape(str(payload.get("customer_name") or "customer"))}</b>,</p>
  <p>Your reservation {field("reservation_id")} is confirmed.</p>
  <p><b>Start date:</b> {field("start_date")}</p>
  <p><b>End date:</b> {field("end_date")}</p>
  <p><b>Pickup time:</b> {field("pickup_time")}</p>
  <p><b>Return time:</b> {field("return_time")}</p>
  <p><b>Location:</b> {escape(location_text)}</p>
  <h3 style="margin-top:25px;">Reserved bikes</h3>
  <table style="border-collapse:collapse;width:100%; margin-top:10px;">
    <thead><tr><th>Model</th><th>Category</th><th>Size</th><th>Quantity</th></tr></thead>
    <tbody>{_bike_rows(payload.get("bikes"))}</tbody>
  </table>
  <p style="margin-top:15px;"><b>Insurance:</b> {insurance}</p>
  <p><b>Deposit:</b> €{format_cents(payload.get("deposit_cents"))}</p>
  <h3 style="margin-top:10px;">Total paid: €{format_cents(payload.get("total_cents"))}</h3>
  {FOOTER}
</div>
"""
    return subject, html


RENDERERS = {"reservation_confirmed": render_reservation_confirmed}
