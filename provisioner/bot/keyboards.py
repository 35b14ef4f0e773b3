from __future__ import annotations

from aiogram.types import InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder, ReplyKeyboardBuilder


ADMIN_BUTTON_PENDING_SUBS = "اشتراک‌های در انتظار ساخت"
ADMIN_BUTTON_LIST_PLANS = "لیست پلن‌ها"
ADMIN_BUTTON_LIST_PANELS = "لیست پنل‌ها"

CALLBACK_APPROVE = "sub_approve"
CALLBACK_REJECT = "sub_reject"
CALLBACK_CREATE_VPN = "createvpn"


def admin_menu_keyboard() -> ReplyKeyboardMarkup:
    kb = ReplyKeyboardBuilder()
    kb.row(KeyboardButton(text=ADMIN_BUTTON_PENDING_SUBS))
    kb.row(
        KeyboardButton(text=ADMIN_BUTTON_LIST_PLANS),
        KeyboardButton(text=ADMIN_BUTTON_LIST_PANELS),
    )
    return kb.as_markup(resize_keyboard=True)


def subscription_actions_keyboard(subscription_id: str, *, decided: bool) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    if not decided:
        kb.button(text="تایید و ساخت", callback_data=f"{CALLBACK_APPROVE}:{subscription_id}")
        kb.button(text="رد", callback_data=f"{CALLBACK_REJECT}:{subscription_id}")
    else:
        kb.button(text="ساخت کانفیگ", callback_data=f"{CALLBACK_CREATE_VPN}:{subscription_id}")
    kb.adjust(2)
    return kb.as_markup()


def create_vpn_keyboard(subscription_id: str) -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    kb.button(text="تلاش دوباره برای ساخت", callback_data=f"{CALLBACK_CREATE_VPN}:{subscription_id}")
    return kb.as_markup()
