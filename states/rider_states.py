from aiogram.fsm.state import State, StatesGroup


class LoginState(StatesGroup):
    waiting_email = State()
    waiting_password = State()


class RiderState(StatesGroup):
    # Ручной ввод причины отказа / неудачной доставки
    # data: order_id, event
    waiting_reason = State()
    # Ручной ввод ETA; data: order_id
    waiting_eta = State()
