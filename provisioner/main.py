from __future__ import annotations

import asyncio
import logging

from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage

from provisioner.bot.handlers_admin import build_admin_router
from provisioner.config import load_config
from provisioner.db import Database
from provisioner.repositories.creation_logs import CreationLogRepository
from provisioner.repositories.panels import PanelRepository
from provisioner.repositories.plans import PlanRepository
from provisioner.repositories.subscriptions import SubscriptionRepository
from provisioner.repositories.test_users import TestUserRepository
from provisioner.services.crypto import CredentialCipher
from provisioner.services.panel_health import PanelHealthService
from provisioner.services.provisioning import ProvisioningResolver
from provisioner.services.reconciler import StatusReconciler


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


async def run() -> None:
    config = load_config()
    configure_logging(config.log_level)

    db = Database(config.database_path)
    await db.init()

    panels_repo = PanelRepository(db)
    plans_repo = PlanRepository(db)
    subscriptions_repo = SubscriptionRepository(db)
    cipher = CredentialCipher(config.app_secret)

    resolver = ProvisioningResolver(
        plans_repo=plans_repo,
        crypto=cipher,
        creation_logs=CreationLogRepository(db),
        test_users=TestUserRepository(db),
        verify_tls=config.panel_verify_tls,
        timeout_seconds=config.request_timeout,
        free_trial_enabled=config.free_trial_enabled,
    )
    reconciler = StatusReconciler(
        subscriptions_repo=subscriptions_repo,
        resolver=resolver,
        claim_ttl_seconds=config.provisioning_claim_ttl,
    )
    panel_health = PanelHealthService(
        panels_repo=panels_repo,
        crypto=cipher,
        verify_tls=config.panel_verify_tls,
        timeout_seconds=config.request_timeout,
    )

    bot = Bot(token=config.bot_token)
    dp = Dispatcher(storage=MemoryStorage())

    dp.include_router(
        build_admin_router(
            admin_chat_id=config.admin_chat_id,
            subscriptions_repo=subscriptions_repo,
            plans_repo=plans_repo,
            panels_repo=panels_repo,
            reconciler=reconciler,
            panel_health=panel_health,
        )
    )

    await dp.start_polling(bot)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
