# tg_bot.py
import logging
import os

import requests
from dotenv import load_dotenv
from telegram import Update, ReplyKeyboardMarkup, KeyboardButton, InlineKeyboardMarkup, InlineKeyboardButton
from telegram.ext import (
    ApplicationBuilder, ConversationHandler, MessageHandler, CallbackQueryHandler, filters, ContextTypes
)

from ai_parser import ExtractionError, extract_receipt
from bill_state import BillState
from split_calc import FIXED_AMOUNT, PERCENTAGE, compute_even_split
from utils import format_money, format_summary_text

load_dotenv()
TOKEN = os.getenv("TELEGRAM_TOKEN")

logger = logging.getLogger(__name__)

# --- Conversation States ---
WAIT_RECEIPT, ASK_SPLIT_MODE, ASK_NAMES, CONFIRM_PEOPLE, ITEM_SELECTION, ASK_TAX, ASK_TIP = range(7)

RESTART = "🔄 Restart"


# --- Keyboards ---
def main_menu_keyboard():
    return ReplyKeyboardMarkup(
        [[KeyboardButton("🚀 Start Receipt Splitter"), KeyboardButton(RESTART)]],
        resize_keyboard=True,
        one_time_keyboard=True
    )


def split_mode_keyboard():
    return ReplyKeyboardMarkup(
        [[KeyboardButton("Even Split"), KeyboardButton("Each Pays Their Own"), KeyboardButton(RESTART)]],
        resize_keyboard=True,
        one_time_keyboard=True
    )


def item_keyboard(bill: BillState, person):
    buttons = [
        [InlineKeyboardButton(
            f"{'✅ ' if i in person.claimed else ''}{item.name} (${format_money(item.price)})",
            callback_data=f"toggle|{i}"
        )]
        for i, item in enumerate(bill.items)
    ]
    buttons.append([InlineKeyboardButton("✔️ Done", callback_data="done")])
    return InlineKeyboardMarkup(buttons)


def parse_tip_text(text: str):
    """'15%' or '15 %' is a percentage tip, anything else a fixed amount."""
    text = text.strip()
    if text.endswith("%"):
        return PERCENTAGE, text[:-1]
    return FIXED_AMOUNT, text


# --- Handlers ---
async def handle_receipt_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.message.reply_text(
        "👋 Welcome to the Receipt Splitter bot!\n📸 Please send a clear photo of the receipt to start.",
        reply_markup=main_menu_keyboard()
    )
    return WAIT_RECEIPT


async def handle_restart(update: Update, context: ContextTypes.DEFAULT_TYPE):
    context.user_data.clear()
    context.chat_data.clear()
    return await handle_receipt_start(update, context)


async def handle_receipt(update: Update, context: ContextTypes.DEFAULT_TYPE):
    photo = await update.message.photo[-1].get_file()
    image_bytes = bytes(await photo.download_as_bytearray())

    await update.message.reply_text("Reading your receipt...")
    try:
        extraction = extract_receipt(image_bytes)
    except ExtractionError as e:
        await update.message.reply_text(f"⚠️ {e}")
        return WAIT_RECEIPT
    except requests.RequestException as e:
        logger.warning("AI service call failed: %s", e)
        await update.message.reply_text("⚠️ Could not reach the receipt reader. Please try again later.")
        return WAIT_RECEIPT

    bill = BillState()
    bill.load_extraction(extraction)
    context.chat_data["bill"] = bill

    lines = "\n".join(f"{i + 1}. {it.name}: ${format_money(it.price)}" for i, it in enumerate(bill.items))
    await update.message.reply_text(
        f"Got it! I found these items:\n{lines}\n\nHow would you like to split the bill?",
        reply_markup=split_mode_keyboard()
    )
    return ASK_SPLIT_MODE


async def ask_names(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip().lower()
    if text == RESTART.lower():
        return await handle_restart(update, context)

    context.user_data["split_mode"] = "even" if "even" in text else "own"
    await update.message.reply_text(
        "Please list the names of everyone present, separated by *spaces*.\n(Example: Alice Bob Charlie)\n⚠️ Don’t use the same name twice.",
        parse_mode="Markdown"
    )
    return ASK_NAMES


async def confirm_people(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if update.message.text.strip() == RESTART:
        return await handle_restart(update, context)

    names = [n.strip() for n in update.message.text.split() if n.strip()]
    if not names:
        await update.message.reply_text("Please enter at least one name.")
        return ASK_NAMES
    context.user_data["participants"] = names

    keyboard = InlineKeyboardMarkup([[
        InlineKeyboardButton("✅ Yes", callback_data="yes"),
        InlineKeyboardButton("❌ No", callback_data="no")
    ]])
    await update.message.reply_text(
        f"So there are *{len(names)}* people present: {', '.join(names)}. Is that correct?",
        parse_mode="Markdown",
        reply_markup=keyboard
    )
    return CONFIRM_PEOPLE


async def confirm_people_response(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()

    if query.data == "no":
        await query.edit_message_text("Okay, please re-enter the names separated by spaces.")
        return ASK_NAMES

    bill: BillState = context.chat_data["bill"]
    names = context.user_data["participants"]

    # --- EVEN SPLIT MODE: still needs tax and tip before dividing ---
    if context.user_data.get("split_mode") == "even":
        await query.edit_message_text("Perfect! Just tax and tip left.")
        await ask_tax(query.message, context)
        return ASK_TAX

    # --- ITEM SELECTION MODE ---
    bill.rename_person(bill.people[0].id, names[0])
    for name in names[1:]:
        bill.add_person(name)

    context.chat_data["current_selector"] = 0
    await query.edit_message_text("Perfect! Let's see who had what.")
    await ask_next_person(query.message, context)
    return ITEM_SELECTION


async def ask_next_person(message, context: ContextTypes.DEFAULT_TYPE):
    bill: BillState = context.chat_data["bill"]
    idx = context.chat_data.get("current_selector", 0)

    if idx >= len(bill.people):
        await ask_tax(message, context)
        return ASK_TAX

    person = bill.people[idx]
    await message.reply_text(
        f"Hi {person.name}, tap the items you ordered (tap again to remove), then press Done:",
        reply_markup=item_keyboard(bill, person)
    )
    return ITEM_SELECTION


async def handle_selection(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    bill: BillState = context.chat_data["bill"]
    idx = context.chat_data.get("current_selector", 0)
    person = bill.people[idx]

    if query.data == "done":
        context.chat_data["current_selector"] = idx + 1
        await query.edit_message_text(f"Thanks, {person.name}!")
        return await ask_next_person(query.message, context)

    if query.data.startswith("toggle|"):
        bill.toggle_claim(person.id, int(query.data.split("|")[1]))
        await query.edit_message_reply_markup(reply_markup=item_keyboard(bill, person))
    return ITEM_SELECTION


async def ask_tax(message, context: ContextTypes.DEFAULT_TYPE):
    bill: BillState = context.chat_data["bill"]
    if bill.tax.rate is None:
        hint = "I couldn't find the tax on the bill."
    else:
        hint = f"The bill suggests a tax rate of *{bill.tax.rate}%*. Send *skip* to keep it."
    await message.reply_text(f"{hint}\nWhat tax rate (in %) should I use?", parse_mode="Markdown")


async def handle_tax(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip()
    if text == RESTART:
        return await handle_restart(update, context)

    bill: BillState = context.chat_data["bill"]
    if text.lower() != "skip":
        bill.set_tax_rate(text.rstrip("%"))
    await update.message.reply_text(
        "How much tip? Send a percentage like *15%* or a fixed amount like *5.00*.",
        parse_mode="Markdown"
    )
    return ASK_TIP


async def handle_tip(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip()
    if text == RESTART:
        return await handle_restart(update, context)

    bill: BillState = context.chat_data["bill"]
    kind, value = parse_tip_text(text)
    bill.set_tip(kind, value)

    if context.user_data.get("split_mode") == "even":
        names = context.user_data["participants"]
        result = compute_even_split(bill.items, len(names), bill.tax.rate, bill.tip)
        msg = (
            f"*Even Split* of ${format_money(result['total'])} (incl. tax and tip):\n"
            + "\n".join(f"{p}: ${format_money(result['per_person'])}" for p in names)
        )
        await update.message.reply_text(msg, parse_mode="Markdown")
        return ConversationHandler.END

    await update.message.reply_text(format_summary_text(bill.summary()), parse_mode="Markdown")
    return ConversationHandler.END


# --- Main entry ---
def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    application = ApplicationBuilder().token(TOKEN).build()

    restart = MessageHandler(filters.TEXT & filters.Regex(f"^{RESTART}$"), handle_restart)
    conv = ConversationHandler(
        entry_points=[
            MessageHandler(filters.TEXT & filters.Regex("^🚀 Start Receipt Splitter$"), handle_receipt_start),
            restart,
        ],
        states={
            WAIT_RECEIPT: [MessageHandler(filters.PHOTO, handle_receipt), restart],
            ASK_SPLIT_MODE: [MessageHandler(filters.TEXT & ~filters.COMMAND, ask_names)],
            ASK_NAMES: [MessageHandler(filters.TEXT & ~filters.COMMAND, confirm_people)],
            CONFIRM_PEOPLE: [CallbackQueryHandler(confirm_people_response)],
            ITEM_SELECTION: [CallbackQueryHandler(handle_selection)],
            ASK_TAX: [MessageHandler(filters.TEXT & ~filters.COMMAND, handle_tax)],
            ASK_TIP: [MessageHandler(filters.TEXT & ~filters.COMMAND, handle_tip)],
        },
        fallbacks=[],
    )

    application.add_handler(conv)
    logger.info("Bot started (polling)...")
    application.run_polling()


if __name__ == "__main__":
    main()
