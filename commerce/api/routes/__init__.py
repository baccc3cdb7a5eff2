"""API routers."""
from commerce.api.routes.auth import auth_router, users_router
from commerce.api.routes.discovery import notification_router, search_router
from commerce.api.routes.monitoring import monitoring_router
from commerce.api.routes.orders import cart_router, order_router, payment_router, shipping_router
from commerce.api.routes.products import inventory_router, product_router, review_router

ALL_ROUTERS = [
    auth_router,
    users_router,
    product_router,
    inventory_router,
    review_router,
    cart_router,
    order_router,
    payment_router,
    shipping_router,
    search_router,
    notification_router,
    monitoring_router,
]
