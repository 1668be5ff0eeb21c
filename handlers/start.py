import logging
from aiogram import Router, types, F
from aiogram.filters import Command, CommandObject, CommandStart, StateFilter
from aiogram.fsm.context import FSMContext
from aiogram.exceptions import TelegramBadRequest
from sqlalchemy.ext.asyncio import AsyncSession

from services.coordinator import CoordinatorRegistry
from middlewares.auth_middleware import end_rider_session
from services.db_ops import get_cached_rider, mark_push_registered, save_login
from services.errors import ApiError, AuthenticationError, NetworkError
from services.notifications import RouteKind, route_notification, start_payload_data
from services.validation import EmailInput, PasswordInput, validate_input
from keyboards.rider_kbs import get_back_to_menu_kb, get_rider_menu_kb
from states.rider_states import LoginState

logger = logging.getLogger(__name__)
router = Router()

MENU_TEXT = "Панель курьера. Выберите действие:"


@router.message(CommandStart())
async def cmd_start(
    message: types.Message,
    command: CommandObject,
    state: FSMContext,
    session: AsyncSession,
    registry: CoordinatorRegistry,
):
    """
    /start и переход по уведомлению (/start order_42, /start return_7, /start broadcast_<link>).
    """
    await state.clear()
    telegram_id = message.from_user.id
    rider = await get_cached_rider(session, telegram_id)
    if rider is None or not rider.is_logged_in:
        await message.answer("👋 Бот курьера доставки.\n\nДля начала работы войдите: /login")
        return

    route = route_notification(start_payload_data(command.args))
    if route.kind is RouteKind.HOME:
        await message.answer(f"Добро пожаловать, {rider.full_name}!\n\n{MENU_TEXT}", reply_markup=get_rider_menu_kb())
        return

    coordinator = registry.get_or_create(telegram_id, rider.access_token)
    try:
        if route.kind is RouteKind.ORDER:
            from handlers.orders import send_order_card
            await send_order_card(message, coordinator, route.target)
            return
        if route.kind is RouteKind.RETURN:
            from handlers.returns import send_return_card
            await send_return_card(message, coordinator, route.target)
            return
    except AuthenticationError:
        await end_rider_session(session, registry, telegram_id)
        await message.answer("🔐 Сессия истекла. Войдите заново: /login")
        return
    if route.kind is RouteKind.DEEP_LINK:
        await message.answer("📢 Новое сообщение от службы доставки", reply_markup=get_back_to_menu_kb(route.target))


@router.callback_query(F.data == "rider:menu")
async def rider_menu(callback: types.CallbackQuery, state: FSMContext):
    await state.clear()
    try:
        await callback.message.edit_text(MENU_TEXT, reply_markup=get_rider_menu_kb())
    except TelegramBadRequest:
        await callback.message.answer(MENU_TEXT, reply_markup=get_rider_menu_kb())
    await callback.answer()


@router.message(Command("cancel"), StateFilter("*"))
async def cmd_cancel(message: types.Message, state: FSMContext):
    await state.clear()
    await message.answer("Отменено.", reply_markup=types.ReplyKeyboardRemove())

# --- Login ---


@router.message(Command("login"))
async def cmd_login(message: types.Message, state: FSMContext):
    await state.set_state(LoginState.waiting_email)
    await message.answer("📧 Введите email курьера (или /cancel):")


@router.message(LoginState.waiting_email, F.text, ~F.text.startswith("/"))
async def login_email(message: types.Message, state: FSMContext):
    try:
        data = validate_input(EmailInput, message.text)
    except ValueError as e:
        await message.answer(f"❌ {e}. Попробуйте ещё раз:")
        return
    await state.update_data(email=data.email)
    await state.set_state(LoginState.waiting_password)
    await message.answer("🔑 Введите пароль:")


@router.message(LoginState.waiting_password, F.text, ~F.text.startswith("/"))
async def login_password(
    message: types.Message,
    state: FSMContext,
    session: AsyncSession,
    registry: CoordinatorRegistry,
):
    # Пароль не должен оставаться в истории чата
    try:
        await message.delete()
    except TelegramBadRequest as e:
        logger.debug("Could not delete password message: %s", e)

    try:
        password = validate_input(PasswordInput, message.text).password
    except ValueError as e:
        await message.answer(f"❌ {e}. Введите пароль:")
        return

    email = (await state.get_data()).get("email")
    if not email:
        await state.set_state(LoginState.waiting_email)
        await message.answer("📧 Введите email курьера:")
        return

    telegram_id = message.from_user.id
    try:
        result = await registry.api_for().login(email, password)
    except AuthenticationError as e:
        logger.info("Login failed for rider %s: %s", telegram_id, e.message)
        await state.set_state(LoginState.waiting_email)
        await message.answer("❌ Неверный email или пароль.\n\n📧 Введите email:")
        return
    except NetworkError:
        await message.answer("📶 Сервер недоступен. Отправьте пароль ещё раз чуть позже:")
        return

    await registry.drop(telegram_id)
    await save_login(
        session,
        telegram_id,
        full_name=result.name or message.from_user.full_name,
        email=email,
        access_token=result.token,
        refresh_token=result.refresh,
        backend_rider_id=result.rider_id,
    )
    await state.clear()

    coordinator = registry.get_or_create(telegram_id, result.token)
    try:
        await coordinator.api.register_push_token(f"telegram:{message.chat.id}")
        await mark_push_registered(session, telegram_id)
    except ApiError as e:
        logger.warning("Push token registration failed for rider %s: %s", telegram_id, e)

    await message.answer(f"✅ Вы вошли как {result.name or email}.\n\n{MENU_TEXT}", reply_markup=get_rider_menu_kb())


@router.message(Command("logout"))
async def cmd_logout(message: types.Message, state: FSMContext, session: AsyncSession, registry: CoordinatorRegistry):
    await state.clear()
    await end_rider_session(session, registry, message.from_user.id)
    await message.answer("👋 Вы вышли. Трекинг остановлен.\n\nВойти снова: /login", reply_markup=types.ReplyKeyboardRemove())
