"""Populate the database with a demo user and an open payment asynchronously."""

import asyncio
from sqlalchemy import delete

from payledger.db.session import DATABASE_URL, SessionLocal
from payledger.models.payment import PaymentRecord
from payledger.models.user import User
from payledger.services import lifecycle_service

print(f"🗂 Используется база данных: {DATABASE_URL}")


async def main(session_factory=None) -> None:
    session_factory = session_factory or SessionLocal
    async with session_factory() as session:
        print("🧹 Очищаю таблицы...")
        await session.execute(delete(PaymentRecord))
        await session.execute(delete(User))
        await session.commit()

        print("➕ Добавляю пользователя...")
        user = User(telegram_id=670562262)
        session.add(user)
        await session.commit()

        print("🧾 Создаю ожидающий платёж...")
        await lifecycle_service.provisional_create(
            session, user.id, "Pro", "monthly", token="demo-checkout"
        )

        print("✅ База данных успешно заполнена.")


if __name__ == "__main__":
    asyncio.run(main())
