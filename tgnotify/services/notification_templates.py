"""Telegram Markdown templates for shop and referral notifications."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from tgnotify.services.errors import TemplateNotFoundError
from tgnotify.services.notification_types import NotificationType, parse_notification_type

Template = Callable[[Mapping[str, Any]], str]

_MISSING = "—"
_DEFAULT_CURRENCY = "RUB"
_DEFAULT_USER_LABEL = "Пользователь"
_MARKDOWN_SPECIAL = ("_", "*", "`", "[")


def render_notification(notification_type: str | NotificationType, content: Mapping[str, Any]) -> str:
    """Render one notification into Telegram Markdown text.

    Pure and deterministic; optional fields that are missing render as display
    defaults.  Raises ``TemplateNotFoundError`` for unknown types.
    """
    resolved = parse_notification_type(notification_type)
    template = TEMPLATES.get(resolved) if resolved is not None else None
    if template is None:
        raise TemplateNotFoundError(str(notification_type))
    return template(content if isinstance(content, Mapping) else {})


def _render_purchase(content: Mapping[str, Any]) -> str:
    currency = _currency(content)
    product = _escape(_str(content.get("product_name"), default=_MISSING))
    return (
        "🎉 *Покупка успешно завершена!*\n"
        "\n"
        f"💰 Сумма: {_fmt_amount(content.get('amount'))} {currency}\n"
        f"📦 Товар: {product}\n"
        f"📅 {_fmt_ts(content.get('purchase_date'))}\n"
        "\n"
        "Спасибо за покупку! 🙏"
    )


def _render_referral_registered(content: Mapping[str, Any]) -> str:
    total = _num(content.get("total_referrals"))
    total_text = _fmt_amount(total) if total is not None else "1"
    return (
        "👥 *Новый реферал зарегистрировался!*\n"
        "\n"
        f"{_user_label(content.get('referral_username'), content.get('referral_first_name'))}\n"
        f"📅 {_fmt_ts(content.get('registration_date'))}\n"
        "\n"
        f"Ваших рефералов: *{total_text}* 🎯"
    )


def _render_referral_purchase(content: Mapping[str, Any]) -> str:
    currency = _currency(content)
    percentage = _fmt_percent(content.get("reward_percentage"))
    return (
        "🛍 *Ваш реферал совершил покупку!*\n"
        "\n"
        f"Реферал: {_user_label(content.get('referral_username'), None)}\n"
        f"💰 Сумма покупки: {_fmt_amount(content.get('purchase_amount'))} {currency}\n"
        "\n"
        f"💎 Ваше вознаграждение: *{_fmt_amount(content.get('expected_reward'))} {currency}* ({percentage})"
    )


def _render_income_credited(content: Mapping[str, Any]) -> str:
    currency = _currency(content)
    level = _str(content.get("referral_level"), default="1")
    return (
        "💰 *Доход начислен!*\n"
        "\n"
        f"➕ Начислено: *{_fmt_amount(content.get('amount'))} {currency}*\n"
        f"От реферала: {_user_label(content.get('from_referral_username'), None)}\n"
        f"Уровень: {_escape(level)}\n"
        "\n"
        f"💵 Ваш баланс: *{_fmt_amount(content.get('new_balance'))} {currency}*"
    )


TEMPLATES: dict[NotificationType, Template] = {
    NotificationType.PURCHASE: _render_purchase,
    NotificationType.REFERRAL_REGISTERED: _render_referral_registered,
    NotificationType.REFERRAL_PURCHASE: _render_referral_purchase,
    NotificationType.INCOME_CREDITED: _render_income_credited,
}


def _str(value: object, *, default: str) -> str:
    text = str(value).strip() if value is not None else ""
    return text or default


def _escape(text: str) -> str:
    for char in _MARKDOWN_SPECIAL:
        text = text.replace(char, f"\\{char}")
    return text


def _user_label(username: object, first_name: object) -> str:
    handle = _str(username, default="").lstrip("@")
    if handle:
        return _escape(f"@{handle}")
    return _escape(_str(first_name, default=_DEFAULT_USER_LABEL))


def _currency(content: Mapping[str, Any]) -> str:
    return _escape(_str(content.get("currency"), default=_DEFAULT_CURRENCY).upper())


def _num(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _fmt_amount(value: object) -> str:
    """990 -> ``990``, 1500.5 -> ``1 500.50``; space grouping like ru-RU."""
    number = _num(value)
    if number is None:
        return _MISSING
    try:
        quantized = number.quantize(Decimal("0.01"))
    except InvalidOperation:
        return f"{number:f}"
    if quantized == quantized.to_integral_value():
        text = f"{int(quantized):,}"
    else:
        text = f"{quantized:,.2f}"
    return text.replace(",", " ")


def _fmt_percent(value: object) -> str:
    number = _num(value)
    if number is None:
        return _MISSING
    text = f"{number.normalize():f}" if number != number.to_integral_value() else str(int(number))
    return f"{text}%"


def _fmt_ts(value: object) -> str:
    if isinstance(value, datetime):
        dt = value.astimezone(UTC) if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return dt.strftime("%d.%m.%Y, %H:%M UTC")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return _MISSING
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return _escape(text)
        return _fmt_ts(parsed)
    return _MISSING
