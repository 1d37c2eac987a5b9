"""
Order Service — エラー定義

注文ワークフローと状態遷移はこの例外を送出する。
境界 (main.py) で kind / status_code を HTTP レスポンスに変換する。
"""

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class OrderError(Exception):
    kind = ErrorKind.INTERNAL
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "kind": self.kind.value,
            "message": self.message,
            **self.details,
        }


class OrderNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    code = "order_not_found"
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class ProductNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND
    code = "product_not_found"
    status_code = 400

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class ProductInactive(OrderError):
    kind = ErrorKind.CONFLICT
    code = "product_inactive"
    status_code = 400

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} is not active", product_id=product_id)


class InsufficientStock(OrderError):
    kind = ErrorKind.CONFLICT
    code = "insufficient_stock"
    status_code = 400

    def __init__(self, product_id: str, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id} (requested {requested})",
            product_id=product_id,
        )


class InvalidTransition(OrderError):
    kind = ErrorKind.CONFLICT
    code = "invalid_transition"
    status_code = 400

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move order from {current} to {target}",
            current_status=current,
            requested_status=target,
        )


class ConcurrencyConflict(OrderError):
    """別のリクエストが先に注文を更新した (version 不一致)"""
    kind = ErrorKind.CONFLICT
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(
            f"Order {order_id} was modified concurrently, reload and retry",
            order_id=order_id,
        )


class OrderValidationError(OrderError):
    kind = ErrorKind.VALIDATION
    code = "validation_error"
    status_code = 400


class CatalogUnavailable(OrderError):
    kind = ErrorKind.UNAVAILABLE
    code = "catalog_unavailable"
    status_code = 503


class InternalError(OrderError):
    pass
