"""
Bootstrap & lazy-install protocol.

Session states::

    UNINITIALIZED -> BOOTSTRAPPING -> READY <-> INSTALLING

``bootstrap`` creates (or reactivates) a session and builds the payload the
client needs to mirror it. ``install_components`` adds feature components to a
ready session. ``resync`` rebuilds a lost session from the component ids the
client reports, without sending definitions again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, TypedDict

from ..errors import ComponentGateError, SessionInitError, TandemError
from .definitions import ComponentDefinition, ComponentRegistry, WireDefinition
from .packet import Command
from .session import Session, SessionRegistry, SessionState, maybe_await
from .wire_serialization import prepare_for_wire

if TYPE_CHECKING:
    from ..config import HostConfig
    from ..shared import HostEndpoint

logger = logging.getLogger(__name__)


class InstallPayload(TypedDict):
    defs: list[WireDefinition]
    ctorArguments: list[list[Any]]
    commands: list[Command]
    identityToken: str
    version: str


class Bootstrapper:
    def __init__(self, components: ComponentRegistry, sessions: SessionRegistry, config: HostConfig) -> None:
        self.components = components
        self.sessions = sessions
        self.config = config
        self._inflight: dict[str, asyncio.Task[InstallPayload]] = {}
        self._resyncing: dict[str, asyncio.Task[Session]] = {}

    # -- bootstrap -------------------------------------------------------------

    async def bootstrap(self, session_id: str, requested: Iterable[str] = ()) -> InstallPayload:
        """Bootstrap *session_id* and return its install payload.

        Concurrent calls for the same id share the first call's result.

        Raises:
            UnknownComponentError: A requested component is not registered.
            ComponentGateError: A requested component's gate rejected it.
            SessionInitError: A lifecycle hook failed; no session is cached.
        """
        task = self._inflight.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._bootstrap(session_id, list(requested)))
            self._inflight[session_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(session_id, None))
        else:
            logger.debug("Joining in-flight bootstrap of session %s", session_id)
        return await asyncio.shield(task)

    async def _bootstrap(self, session_id: str, requested: list[str]) -> InstallPayload:
        session = self.sessions.get(session_id)
        fresh = session is None
        if session is None:
            session = await self.sessions.ensure(session_id)
        try:
            return await session.queue.run_ordered(
                lambda: self._bootstrap_in_queue(session, requested, fresh))
        except Exception:
            if fresh:
                await self.sessions.destroy(session_id)
            raise

    def _initial_features(self, requested: list[str]) -> list[str]:
        names = list(self.config.get("initial_components") or [])
        if not self.config.get("lazy_load", True):
            names.extend(d.name for d in self.components.features())
        names.extend(requested)
        return list(dict.fromkeys(names))

    async def _bootstrap_in_queue(self, session: Session, requested: list[str], fresh: bool) -> InstallPayload:
        previous_state = session.state
        session.state = SessionState.BOOTSTRAPPING
        try:
            features = self._features_to_install(session, self._initial_features(requested))
            mark = len(session.buffer)
            new_features = await self.sessions.instantiate(session, features)
            try:
                if fresh:
                    libs = list(session.instances.libs.values())
                    await self._run_hook(session, libs, "on_new_client")
                    await self._run_hook(session, libs, "on_bootstrap_ready")
                else:
                    existing = [i for i in session.instances if not any(i is n for n in new_features)]
                    await self._run_hook(session, existing, "on_bootstrap_ready")
                await self._run_hook(session, new_features, "on_new_client")
                await self._run_hook(session, new_features, "on_bootstrap_ready")

                installed = [session.instances[name].definition for name in session.instances.names()]
                payload = self._payload(session, installed, mark, rotate=not fresh)
            except SessionInitError:
                if not fresh:
                    await self.sessions.rollback(session, new_features, mark)
                raise
        except BaseException:
            session.state = previous_state
            raise
        session.state = SessionState.READY
        if not fresh:
            logger.info("Reactivated cached session %s", session.session_id)
        logger.debug("Bootstrapped session %s: %s", session.session_id, [d["name"] for d in payload["defs"]])
        return payload

    # -- lazy install ----------------------------------------------------------

    async def install_components(self, session: Session, names: list[str]) -> InstallPayload:
        """Install *names* and their includes into a bootstrapped *session*.

        Must run inside the session queue. Already-installed components are
        skipped; the payload only describes the new ones. On failure the new
        components are torn down and the commands they buffered are dropped.

        Raises:
            UnknownComponentError: A name or include is not registered.
            ComponentGateError: ``may_install`` rejected a component.
            SessionInitError: A ``setup`` or ``on_bootstrap_ready`` hook failed.
        """
        if session.state is SessionState.UNINITIALIZED:
            raise TandemError(f"Session {session.session_id} has not been bootstrapped")

        definitions = self._features_to_install(session, names)
        previous_state = session.state
        if previous_state is SessionState.READY:
            session.state = SessionState.INSTALLING
        try:
            mark = len(session.buffer)
            created = await self.sessions.instantiate(session, definitions)
            try:
                await self._run_hook(session, created, "on_bootstrap_ready")
                payload = self._payload(session, definitions, mark)
            except SessionInitError:
                await self.sessions.rollback(session, created, mark)
                raise
        finally:
            session.state = previous_state
        logger.debug("Installed %s into session %s", [d.name for d in definitions], session.session_id)
        return payload

    def _features_to_install(self, session: Session, names: list[str]) -> list[ComponentDefinition]:
        closure = [
            d for d in self.components.resolve_includes(names)
            if not d.library and d.name not in session.instances
        ]
        for definition in closure:
            if not definition.host_instance_class.may_install(session.context):
                raise ComponentGateError(definition.name)
        return closure

    # -- resync ----------------------------------------------------------------

    async def resync(self, session_id: str, installed_ids: list[str]) -> Session:
        """Rebuild a lost session from the client's installed component ids.

        Only ``on_bootstrap_ready`` runs for the restored components, and no
        payload is produced. The new identity token is sent to the client with
        ``ComponentCommunications.updateIdentity``. If the session is already
        cached, this is a no-op.

        Raises:
            SessionInitError: A lifecycle hook failed; no session is cached.
        """
        session = self.sessions.get(session_id)
        if session is not None:
            return session

        task = self._resyncing.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._resync(session_id, list(installed_ids)))
            self._resyncing[session_id] = task
            task.add_done_callback(lambda _: self._resyncing.pop(session_id, None))
        return await asyncio.shield(task)

    async def _resync(self, session_id: str, installed_ids: list[str]) -> Session:
        session = await self.sessions.ensure(session_id)
        try:
            await session.queue.run_ordered(lambda: self._resync_in_queue(session, installed_ids))
        except Exception:
            await self.sessions.destroy(session_id)
            raise
        return session

    async def _resync_in_queue(self, session: Session, installed_ids: list[str]) -> None:
        session.state = SessionState.BOOTSTRAPPING
        known = []
        for name in installed_ids:
            if name in self.components:
                known.append(name)
            else:
                logger.warning("[%s] Client reported unknown component %s", session.session_id, name)
        features = []
        for definition in self.components.resolve_includes(known):
            if definition.library or definition.name in session.instances:
                continue
            if not definition.host_instance_class.may_install(session.context):
                logger.warning(
                    "[%s] Not restoring %s: install gate rejected it", session.session_id, definition.name)
                continue
            features.append(definition)
        await self.sessions.instantiate(session, features)
        await self._run_hook(session, list(session.instances), "on_bootstrap_ready")
        session.buffer_command("ComponentCommunications", "updateIdentity", session.identity_token)
        session.state = SessionState.READY
        logger.info("Resynchronized session %s with %s", session.session_id, session.instances.names())

    # -- helpers ---------------------------------------------------------------

    async def _run_hook(self, session: Session, instances: list[HostEndpoint], hook: str) -> None:
        for instance in instances:
            try:
                await maybe_await(getattr(instance, hook)())
            except Exception as exc:
                logger.exception("[%s] %s() of %s failed", session.session_id, hook, instance.definition.name)
                raise SessionInitError(session.session_id, instance.definition.name) from exc

    def _payload(
        self, session: Session, definitions: list[ComponentDefinition], mark: int, rotate: bool = False
    ) -> InstallPayload:
        ctor_arguments = []
        for definition in definitions:
            instance = session.instances[definition.name]
            try:
                arguments = list(instance.get_client_ctor_arguments())
                ctor_arguments.append(prepare_for_wire(arguments))
            except Exception as exc:
                logger.exception("[%s] Client arguments of %s failed", session.session_id, definition.name)
                raise SessionInitError(session.session_id, definition.name) from exc
        if rotate:
            session.rotate_identity()
        return InstallPayload(
            defs=[d.to_wire() for d in definitions],
            ctorArguments=ctor_arguments,
            commands=session.take_commands_since(mark),
            identityToken=session.identity_token,
            version=self.config["protocol_version"],
        )
