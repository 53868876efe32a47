"""
Mock Cart Service

In-memory product catalog and carts standing in for the real cart service.
Snapshots are taken at call time; prices and availability are copied so
later catalog changes never touch an order.
"""
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
import logging

from ..exceptions import InvalidCartStateError
from ..models.orders import CartSnapshot, LineItem

logger = logging.getLogger(__name__)


@dataclass
class Product:
    """Product data structure."""
    product_id: str
    name: str
    price_cents: int
    stock_status: str  # "in_stock" or "out_of_stock"


PRODUCT_CATALOG: List[Product] = [
    Product(product_id="prod_airpods_001", name="Apple AirPods Pro", price_cents=24900, stock_status="in_stock"),
    Product(product_id="prod_coffee_001", name="Philips HD7462 Coffee Maker", price_cents=6900, stock_status="in_stock"),
    Product(product_id="prod_blender_001", name="Ninja Professional Blender", price_cents=8999, stock_status="in_stock"),
    Product(product_id="prod_mug_001", name="Ceramic Travel Mug", price_cents=2100, stock_status="in_stock"),
    Product(product_id="prod_tablet_001", name="Samsung Galaxy Tab S9", price_cents=79900, stock_status="out_of_stock"),
]


# cart_id -> (user_id, [(product_id, quantity)])
DEMO_CARTS: Dict[str, Tuple[str, List[Tuple[str, int]]]] = {
    "cart_demo_001": ("user_demo_001", [("prod_airpods_001", 1), ("prod_mug_001", 2)]),
    "cart_demo_002": ("user_demo_001", [("prod_coffee_001", 1)]),
    "cart_demo_oos": ("user_demo_001", [("prod_tablet_001", 1)]),
}


class DemoCartService:
    """Carts keyed by cart id, each a list of (product_id, quantity)."""

    def __init__(
        self,
        catalog: Optional[List[Product]] = None,
        currency: str = "USD",
        carts: Optional[Dict[str, Tuple[str, List[Tuple[str, int]]]]] = None,
    ):
        self._catalog: Dict[str, Product] = {p.product_id: p for p in (catalog or PRODUCT_CATALOG)}
        self._carts: Dict[str, Tuple[str, List[Tuple[str, int]]]] = dict(DEMO_CARTS if carts is None else carts)
        self._currency = currency

    def put_cart(self, cart_id: str, user_id: str, items: List[Tuple[str, int]]) -> None:
        self._carts[cart_id] = (user_id, list(items))
        logger.debug(f"Stored cart {cart_id} for user {user_id} with {len(items)} line(s)")

    async def get_snapshot(self, cart_id: str, user_id: str) -> CartSnapshot:
        cart = self._carts.get(cart_id)
        if cart is None or cart[0] != user_id:
            raise InvalidCartStateError(
                f"No cart {cart_id} for user {user_id}",
                {"cart_id": cart_id},
            )

        items = []
        for product_id, quantity in cart[1]:
            product = self._catalog.get(product_id)
            items.append(LineItem(
                product_id=product_id,
                product_name=product.name if product else "",
                quantity=quantity,
                unit_price_cents=product.price_cents if product else 0,
                available=bool(product) and product.stock_status == "in_stock",
            ))

        return CartSnapshot(cart_id=cart_id, user_id=user_id, items=items, currency=self._currency)
