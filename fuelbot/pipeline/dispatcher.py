import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from fuelbot.commands import CommandRouter
from fuelbot.config import BotConfig
from fuelbot.logging_config import get_logger
from fuelbot.pipeline.context import BotServices, DeferredTask, DispatchContext
from fuelbot.pipeline.stages import default_stages
from fuelbot.schemas.telegram import TelegramMessage, TelegramUpdate
from fuelbot.services.result import Result

logger = get_logger("dispatcher")


class Dispatcher:
    """Entry point for every update: runs the stages in order, then the router."""

    def __init__(
        self,
        config: BotConfig,
        services: BotServices,
        stages: Optional[list] = None,
        router: Optional[Callable[[DispatchContext], None]] = None,
    ):
        self.config = config
        self.services = services
        self.stages = stages if stages is not None else default_stages(config.enable_diagnostics)
        self.router = router if router is not None else CommandRouter(redispatch=self.redispatch)

    def dispatch(self, update: TelegramUpdate, db: Session, parent: Optional[DispatchContext] = None) -> DispatchContext:
        ctx = DispatchContext(update=update, config=self.config, services=self.services, db=db, parent=parent)
        self._run(ctx, 0)
        if parent is None:
            try:
                ctx.answer_callback()
            except Exception as e:
                logger.warning("Could not answer callback query", extra={"context": {"error": str(e)}})
        return ctx

    def _run(self, ctx: DispatchContext, index: int) -> None:
        if index == len(self.stages):
            self.router(ctx)
            return
        stage = self.stages[index]
        stage(ctx, lambda: self._run(ctx, index + 1))

    def redispatch(self, ctx: DispatchContext, text: str) -> DispatchContext:
        """Dispatch ``text`` as if the same user had sent it in the same chat."""
        source = ctx.message
        synthetic = TelegramUpdate(
            update_id=ctx.update.update_id,
            message=TelegramMessage(
                message_id=source.message_id,
                date=source.date,
                chat=source.chat,
                from_user=ctx.user,
                text=text,
            ),
        )
        return self.dispatch(synthetic, ctx.db, parent=ctx)


def run_deferred(tasks: list[DeferredTask], sleep: Callable[[float], None] = time.sleep) -> list[Result]:
    """Run deferred tasks in order, each isolated from the others' failures."""
    results = []
    for task in tasks:
        if task.delay > 0:
            sleep(task.delay)
        try:
            value = task.func()
        except Exception as e:
            logger.error(
                "Deferred task failed",
                exc_info=True,
                extra={"context": {"task": task.name, "error": str(e)}},
            )
            results.append(Result.failure(str(e), "deferred_failed"))
            continue
        results.append(Result.success(value))
    return results
