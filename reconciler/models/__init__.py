from .order import OrderMirror

__all__ = [
    "OrderMirror",
]
