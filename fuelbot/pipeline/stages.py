"""Pipeline stages.

Each stage is a callable ``stage(ctx, call_next)``. A stage short-circuits by
returning without calling ``call_next``. Order and failure policy:

1. ErrorBoundaryStage      catches everything, generic reply
2. DiagnosticsStage        optional, own failures never block
3. LoggingStage            re-raises
4. SessionStage            repairs on read, keeps state on storage errors, resets on crash
5. GroupRestrictionStage   silent drop, fails closed
6. TenantResolutionStage   user-visible stops, bypass allow-list
7. TenantSettingsStage     defaults on failure
8. AccessControlStage      fails open
9. SensitiveActionStage    fails closed
"""

import time
from typing import Callable

from fuelbot.logging_config import get_logger
from fuelbot.pipeline.context import DispatchContext, TenantResolution
from fuelbot.schemas.settings import TenantSettingsView
from fuelbot.services import access_control, tenant_service
from fuelbot.services.errors import FatalPipelineError, NotFoundError, PermissionDeniedError, TransientError
from fuelbot.services.session_store import key_for

logger = get_logger("pipeline")

CallNext = Callable[[], None]

GENERIC_ERROR_MESSAGE = "❌ Ocurrió un error al procesar tu solicitud. Por favor intenta de nuevo más tarde."
NOT_REGISTERED_MESSAGE = "Este grupo no está registrado. Utilice /registrar para iniciar el proceso de registro."
INACTIVE_MESSAGE = "Esta empresa no tiene una suscripción activa. Contacte al administrador para reactivar su servicio."
PENDING_APPROVAL_MESSAGE = (
    "El registro de esta empresa está pendiente de aprobación. Le notificaremos cuando sea aprobado."
)
LOOKUP_FAILED_MESSAGE = "⚠️ No se pudo verificar el registro de este grupo. Intenta de nuevo en unos momentos."
TENANT_ADMIN_ONLY_MESSAGE = "⛔ Solo los administradores de la empresa pueden usar este comando."
TENANT_ADMIN_UNVERIFIED_MESSAGE = "⚠️ No se pudo verificar si eres administrador de la empresa. Intenta más tarde."
FEATURE_DISABLED_MESSAGE = "⛔ Esta función no está habilitada para tu empresa."
SENSITIVE_DENIED_MESSAGE = "⛔ No tienes permisos para realizar esta acción."
SENSITIVE_UNVERIFIED_MESSAGE = "No se pudo verificar tus permisos. Intenta más tarde."

LINK_COMMANDS = frozenset({"/vincular", "/activar"})
BYPASS_COMMANDS = frozenset({"/start", "/registrar", "/ayuda", "/help", "/registrar_empresa"})
REGISTRATION_COMMAND_PREFIXES = ("/registrar_empresa", "/vincular", "/activar")
BYPASS_CALLBACKS = frozenset({"start_registration"})
ONBOARDING_STATE_PREFIX = "register_company_"


class ErrorBoundaryStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        try:
            call_next()
        except Exception as e:
            error = e if isinstance(e, FatalPipelineError) else FatalPipelineError(str(e))
            ctx.error = error
            logger.error(
                "Unhandled error while processing update",
                exc_info=(type(e), e, e.__traceback__),
                extra={"context": {**ctx.log_context(), "error": str(e), "error_type": type(e).__name__}},
            )
            try:
                ctx.reply(GENERIC_ERROR_MESSAGE)
            except Exception as reply_error:
                logger.error("Could not deliver error reply", extra={"context": {"error": str(reply_error)}})


class DiagnosticsStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        started = time.perf_counter()
        try:
            ctx.diagnostic.update(
                {
                    "update_id": ctx.update.update_id,
                    "update_type": ctx.update.kind,
                    "chat_id": ctx.chat_id,
                    "chat_type": ctx.chat_type,
                    "user_id": ctx.user_id,
                    "callback_data": ctx.callback_data,
                    "has_photo": ctx.photo_file_id is not None,
                }
            )
        except Exception as e:
            logger.warning("Diagnostics capture failed", extra={"context": {"error": str(e)}})

        try:
            call_next()
        finally:
            try:
                ctx.diagnostic["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
                logger.debug("Update diagnostics", extra={"context": dict(ctx.diagnostic)})
            except Exception as e:
                logger.warning("Diagnostics finalize failed", extra={"context": {"error": str(e)}})


class LoggingStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        started = time.perf_counter()
        logger.debug("Update received", extra={"context": ctx.log_context()})
        try:
            call_next()
        except Exception as e:
            logger.warning(
                "Update processing failed",
                extra={
                    "context": {
                        **ctx.log_context(),
                        "error": str(e),
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    }
                },
            )
            raise
        logger.debug(
            "Update processed",
            extra={"context": {**ctx.log_context(), "duration_ms": round((time.perf_counter() - started) * 1000, 2)}},
        )


class SessionStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        store = ctx.services.session_store
        key = key_for(ctx.chat_id, ctx.user_id)

        parent = ctx.parent
        if parent is not None and parent.session_key == key and parent.session is not None:
            # nested dispatch: the parent already holds the lock and saves on exit
            ctx.session_key = key
            ctx.session = parent.session
            call_next()
            return

        with store.lock(key):
            ctx.session_key = key
            # a failed read propagates before anything is saved over the stored session
            ctx.session = store.load(key)
            try:
                call_next()
            except TransientError:
                logger.warning("Keeping session after storage failure", extra={"context": ctx.log_context()})
                raise
            except Exception:
                logger.warning("Resetting session after failure", extra={"context": ctx.log_context()})
                ctx.session.reset()
                try:
                    store.save(key, ctx.session)
                except TransientError as save_error:
                    logger.error("Could not persist reset session", extra={"context": {"error": str(save_error)}})
                raise
            store.save(key, ctx.session)


class GroupRestrictionStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        try:
            allowed = self.is_allowed(ctx)
        except Exception as e:
            logger.error(
                "Group restriction check failed, dropping update",
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
            return

        if not allowed:
            logger.info("Dropping update from unauthorized chat", extra={"context": ctx.log_context()})
            return
        call_next()

    def is_allowed(self, ctx: DispatchContext) -> bool:
        if ctx.chat_id is None:
            return False
        if ctx.is_private:
            return True

        command = ctx.command
        if access_control.is_admin_command(command) and ctx.is_bot_admin:
            return True
        if command in LINK_COMMANDS and ctx.is_group:
            return True
        if ctx.config.is_allowed_group(ctx.chat_id):
            return True
        return tenant_service.find_active_tenant(ctx.db, ctx.chat_id) is not None


class TenantResolutionStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        if ctx.tenant_resolution is not None:
            call_next()
            return

        parent = ctx.parent
        if parent is not None and parent.tenant_resolution is not None and parent.chat_id == ctx.chat_id:
            ctx.tenant = parent.tenant
            ctx.settings = parent.settings
            ctx.admin_mode = parent.admin_mode
            ctx.tenant_resolution = parent.tenant_resolution
            call_next()
            return

        bypass = self.bypass(ctx)
        if bypass is not None:
            ctx.tenant_resolution = bypass
            self._attach_if_linked(ctx)
            call_next()
            return

        try:
            tenant = tenant_service.resolve(ctx.db, ctx.chat_id)
        except NotFoundError:
            ctx.reply(NOT_REGISTERED_MESSAGE)
            return
        except TransientError as e:
            logger.error("Tenant lookup failed", extra={"context": {**ctx.log_context(), "error": str(e)}})
            ctx.reply(LOOKUP_FAILED_MESSAGE)
            return

        if not tenant.is_active:
            ctx.reply(INACTIVE_MESSAGE)
            return
        if not tenant.is_approved:
            ctx.reply(PENDING_APPROVAL_MESSAGE)
            return

        ctx.tenant = tenant
        ctx.tenant_resolution = TenantResolution.RESOLVED
        call_next()

    def bypass(self, ctx: DispatchContext):
        command = ctx.command
        if access_control.is_admin_command(command) and ctx.is_bot_admin:
            ctx.admin_mode = True
            return TenantResolution.ADMIN
        if ctx.is_private and ctx.is_bot_admin:
            ctx.admin_mode = True
            return TenantResolution.ADMIN
        if command in BYPASS_COMMANDS:
            return TenantResolution.BYPASSED
        if command and command.startswith(REGISTRATION_COMMAND_PREFIXES):
            return TenantResolution.BYPASSED
        if ctx.session is not None and ctx.session.state.startswith(ONBOARDING_STATE_PREFIX):
            return TenantResolution.BYPASSED
        if ctx.callback_data in BYPASS_CALLBACKS:
            return TenantResolution.BYPASSED
        return None

    def _attach_if_linked(self, ctx: DispatchContext) -> None:
        """Bypassed updates from a linked group still see their tenant."""
        if ctx.is_private:
            return
        try:
            tenant = tenant_service.find_active_tenant(ctx.db, ctx.chat_id)
        except TransientError as e:
            logger.warning("Optional tenant lookup failed", extra={"context": {"error": str(e)}})
            return
        ctx.tenant = tenant


class TenantSettingsStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        if ctx.tenant is not None and ctx.settings is None:
            try:
                ctx.settings = tenant_service.get_or_create_settings(ctx.db, ctx.tenant)
            except Exception as e:
                logger.warning(
                    "Tenant settings unavailable, using defaults",
                    extra={"context": {"tenant_id": str(ctx.tenant.id), "error": str(e)}},
                )
                ctx.db.rollback()
                ctx.settings = TenantSettingsView()
        call_next()


class AccessControlStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        try:
            self.check(ctx)
        except PermissionDeniedError as denied:
            logger.info("Access denied", extra={"context": {**ctx.log_context(), "reason": denied.code}})
            ctx.toast(denied.message, show_alert=True)
            return
        except Exception as e:
            logger.warning(
                "Access control check failed, allowing",
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
        call_next()

    def check(self, ctx: DispatchContext) -> None:
        """Raise PermissionDeniedError when the tenant may not run this action."""
        if ctx.tenant is None or ctx.admin_mode:
            return

        if ctx.command in access_control.TENANT_ADMIN_COMMANDS:
            try:
                allowed = access_control.is_tenant_admin(
                    ctx.services.tenant_admins, ctx.config, ctx.tenant, ctx.user_id
                )
            except TransientError as e:
                logger.warning("Tenant admin lookup failed", extra={"context": {"error": str(e)}})
                raise PermissionDeniedError(TENANT_ADMIN_UNVERIFIED_MESSAGE, code="admin_unverified") from e
            if not allowed:
                raise PermissionDeniedError(TENANT_ADMIN_ONLY_MESSAGE, code="tenant_admin_only")

        feature = access_control.required_feature(ctx.action)
        if feature and not access_control.is_feature_enabled(ctx.settings, feature):
            raise PermissionDeniedError(FEATURE_DISABLED_MESSAGE, code="feature_disabled")


class SensitiveActionStage:
    def __call__(self, ctx: DispatchContext, call_next: CallNext) -> None:
        if not access_control.is_sensitive_action(ctx.callback_data):
            call_next()
            return

        try:
            allowed = self.is_authorized(ctx)
        except TransientError as e:
            logger.warning(
                "Could not verify permissions for sensitive action",
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
            ctx.toast(SENSITIVE_UNVERIFIED_MESSAGE, show_alert=True)
            return
        except Exception as e:
            logger.error(
                "Sensitive action check failed",
                extra={"context": {**ctx.log_context(), "error": str(e)}},
            )
            ctx.toast(SENSITIVE_UNVERIFIED_MESSAGE, show_alert=True)
            return

        if not allowed:
            logger.info("Sensitive action denied", extra={"context": ctx.log_context()})
            ctx.toast(SENSITIVE_DENIED_MESSAGE, show_alert=True)
            return
        call_next()

    def is_authorized(self, ctx: DispatchContext) -> bool:
        if ctx.is_private:
            return ctx.is_bot_admin
        if ctx.is_group:
            return access_control.check_group_admin(
                ctx.services.transport,
                ctx.chat_id,
                ctx.user_id,
                ctx.config.membership_timeout_seconds,
            )
        return False


def default_stages(enable_diagnostics: bool = False) -> list:
    stages = [ErrorBoundaryStage()]
    if enable_diagnostics:
        stages.append(DiagnosticsStage())
    stages.extend(
        [
            LoggingStage(),
            SessionStage(),
            GroupRestrictionStage(),
            TenantResolutionStage(),
            TenantSettingsStage(),
            AccessControlStage(),
            SensitiveActionStage(),
        ]
    )
    return stages
