import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from models import PaymentMethod
from schemas import PaymentMethodRecord, PaymentMethodsDocument

logger = logging.getLogger(__name__)

PAYMENT_METHODS_FILE_NAME = "pmt.json"

DEFAULT_PAYMENT_METHODS = (
    PaymentMethod("d2ba53b0", label="Cash", icon="fas:f53a", color="#008000"),
    PaymentMethod("b6eb6e66", label="Bank account", icon="far:f09d", color="#ebb147"),
)


@dataclass(frozen=True)
class PaymentMethodSnapshot:
    methods: tuple[PaymentMethod, ...]
    order: tuple[str, ...]
    disabled: tuple[str, ...]
    default_id: Optional[str]


class PaymentMethodDirectory:
    """Payment methods split into an ordered active list and a disabled list.

    Disabled methods stay known so old transactions keep their labels, but
    they are not offered for new transactions. The default method is always
    an active one while any active method exists.
    """

    def __init__(
        self,
        methods: Iterable[PaymentMethod] = (),
        order: Iterable[str] = (),
        disabled: Iterable[str] = (),
        default_id: Optional[str] = None,
    ) -> None:
        self._methods: dict[str, PaymentMethod] = {m.id: m for m in methods}
        self._disabled: list[str] = []
        for method_id in disabled:
            if method_id in self._methods and method_id not in self._disabled:
                self._disabled.append(method_id)
        self._order: list[str] = []
        for method_id in list(order) + list(self._methods):
            if (
                method_id in self._methods
                and method_id not in self._order
                and method_id not in self._disabled
            ):
                self._order.append(method_id)
        self._default_id: Optional[str] = None
        self._set_default_or_first(default_id)

    @classmethod
    def with_defaults(cls) -> "PaymentMethodDirectory":
        return cls(DEFAULT_PAYMENT_METHODS, default_id=DEFAULT_PAYMENT_METHODS[0].id)

    def _set_default_or_first(self, method_id: Optional[str]) -> None:
        if method_id in self._order:
            self._default_id = method_id
        else:
            self._default_id = self._order[0] if self._order else None

    def __contains__(self, method_id: str) -> bool:
        return method_id in self._methods

    def __len__(self) -> int:
        return len(self._methods)

    @property
    def default_id(self) -> Optional[str]:
        return self._default_id

    def get(self, method_id: str) -> Optional[PaymentMethod]:
        return self._methods.get(method_id)

    def ids(self) -> set[str]:
        return set(self._methods)

    def is_active(self, method_id: str) -> bool:
        return method_id in self._order

    def ordered(self, include_disabled: bool = False) -> list[PaymentMethod]:
        ids = self._order + self._disabled if include_disabled else self._order
        return [self._methods[method_id] for method_id in ids]

    def excluded_except(self, selected: Iterable[str]) -> frozenset[str]:
        """Ids to exclude from a filter so only ``selected`` remain."""
        return frozenset(self._methods) - frozenset(selected)

    def put(self, method: PaymentMethod) -> None:
        """Add a new method at the end of the active list, or update one in place."""
        if method.id not in self._methods:
            self._order.append(method.id)
        self._methods[method.id] = method
        if self._default_id is None:
            self._set_default_or_first(method.id)

    def disable(self, method_id: str) -> bool:
        # The last active method cannot be disabled.
        if method_id not in self._order or len(self._order) <= 1:
            return False
        self._order.remove(method_id)
        self._disabled.insert(0, method_id)
        if self._default_id == method_id:
            self._default_id = self._order[0]
        logger.info(f"payment_method_disabled: id={method_id} default={self._default_id}")
        return True

    def enable(self, method_id: str) -> bool:
        if method_id not in self._disabled:
            return False
        self._disabled.remove(method_id)
        self._order.append(method_id)
        return True

    def set_default(self, method_id: str) -> None:
        if method_id not in self._order:
            raise ValueError(f"Payment method {method_id!r} is not active")
        self._default_id = method_id

    def capture(self) -> PaymentMethodSnapshot:
        return PaymentMethodSnapshot(
            methods=tuple(self._methods.values()),
            order=tuple(self._order),
            disabled=tuple(self._disabled),
            default_id=self._default_id,
        )

    def restore(self, snapshot: PaymentMethodSnapshot) -> None:
        self._methods = {m.id: m for m in snapshot.methods}
        self._order = list(snapshot.order)
        self._disabled = list(snapshot.disabled)
        self._default_id = snapshot.default_id

    @classmethod
    def from_document(cls, document: PaymentMethodsDocument) -> "PaymentMethodDirectory":
        methods = [
            PaymentMethod(method_id, label=record.label, icon=record.icon, color=record.color)
            for method_id, record in document.items.items()
        ]
        for method_id in document.order + document.disabled:
            if method_id not in document.items:
                logger.warning(f"payment_method_unknown: id={method_id}")
        return cls(methods, document.order, document.disabled, document.default_id)

    @classmethod
    def load_json(cls, content: Optional[str]) -> "PaymentMethodDirectory":
        if not content or not content.strip():
            return cls.with_defaults()
        return cls.from_document(PaymentMethodsDocument.model_validate_json(content))

    def to_document(self) -> PaymentMethodsDocument:
        return PaymentMethodsDocument(
            order=list(self._order),
            disabled=list(self._disabled),
            default_id=self._default_id,
            items={
                method.id: PaymentMethodRecord(
                    label=method.label, icon=method.icon, color=method.color
                )
                for method in self.ordered(include_disabled=True)
            },
        )

    def dump_json(self) -> str:
        return self.to_document().model_dump_json(by_alias=True, exclude_none=True)
