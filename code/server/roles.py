# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import logging
from typing import TYPE_CHECKING

from common import constants
from common.config import GuildPair
from common.errors import MirrorError, NotFound
from server.correspondence import CorrespondenceStore
from server.models import MappingKind, RoleInfo, StructuralSnapshot
from server.permissions import sanitize
from server.protection import ProtectionList

if TYPE_CHECKING:
    from server.connectors import TargetConnector
    from server.structure import DiffReport

logger = logging.getLogger("server.roles")


class RoleSync:
    """
    Role phase of a diff pass. Managed and @everyone roles are never touched on
    either side, and every permission set goes through the sanitizer first.
    """

    def __init__(
        self,
        store: CorrespondenceStore,
        protection: ProtectionList,
        *,
        delete_roles: bool = True,
        max_roles: int = constants.MAX_ROLES,
    ):
        self.store = store
        self.protection = protection
        self.delete_roles = delete_roles
        self.MAX_ROLES = max_roles

    @staticmethod
    def _desired(r: RoleInfo) -> dict:
        return {
            "name": r.name,
            "permissions": sanitize(r.permissions, label=r.name).value,
            "color": r.color,
            "hoist": r.hoist,
            "mentionable": r.mentionable,
        }

    @staticmethod
    def _current(t: RoleInfo) -> dict:
        return {
            "name": t.name,
            "permissions": t.permissions,
            "color": t.color,
            "hoist": t.hoist,
            "mentionable": t.mentionable,
        }

    async def sync(
        self,
        pair: GuildPair,
        source: StructuralSnapshot,
        target: StructuralSnapshot,
        target_conn: "TargetConnector",
        report: "DiffReport",
    ) -> None:
        gid = pair.source_guild_id
        incoming = sorted(
            (r for r in source.roles if r.mirrorable),
            key=lambda r: r.position,
            reverse=True,
        )[: self.MAX_ROLES]
        mirrorable = [t for t in target.roles if t.mirrorable]
        claimed: set[int] = set()

        for r in incoming:
            mapping = self.store.lookup(r.id, gid, MappingKind.ROLE, name=r.name)
            if mapping is not None and mapping.manually_deleted:
                report.skipped.append(f"role {r.name} (manually deleted)")
                continue

            tgt = target.role(mapping.mirror_id) if mapping and mapping.mirror_id else None
            if tgt is not None and (tgt.id in claimed or not tgt.mirrorable):
                tgt = None
            if tgt is None:
                tgt = next(
                    (t for t in mirrorable if t.name == r.name and t.id not in claimed),
                    None,
                )
                if tgt is not None:
                    mapping = self.store.register(
                        r.id, gid, r.name, tgt.id, MappingKind.ROLE,
                        mirror_guild_id=pair.mirror_guild_id,
                    )
                    report.repaired += 1
                    logger.info("[🩹] Adopted existing mirror role %r", r.name)

            desired = self._desired(r)
            if tgt is not None:
                claimed.add(tgt.id)
                current = self._current(tgt)
                changes = {k: v for k, v in desired.items() if current[k] != v}
                if changes:
                    try:
                        await target_conn.edit_role(tgt.id, **changes)
                    except MirrorError as e:
                        logger.warning("[⚠️] Could not update role %r: %s", tgt.name, e)
                        report.error(f"update role {tgt.name}", e)
                    else:
                        report.roles_updated += 1
                        logger.info(
                            "[✏️] Updated role %r (%s)", r.name, ", ".join(sorted(changes))
                        )
                if mapping is not None and mapping.name != r.name:
                    self.store.register(
                        r.id, gid, r.name, tgt.id, MappingKind.ROLE,
                        mirror_guild_id=pair.mirror_guild_id,
                    )
                continue

            name = desired.pop("name")
            try:
                new_id = await target_conn.create_role(name, **desired)
            except MirrorError as e:
                logger.warning("[⚠️] Could not create role %r: %s", r.name, e)
                report.error(f"create role {r.name}", e)
                continue
            self.store.register(
                r.id, gid, r.name, new_id, MappingKind.ROLE,
                mirror_guild_id=pair.mirror_guild_id,
            )
            claimed.add(new_id)
            report.roles_created += 1
            logger.info("[➕] Created role %r", r.name)

        if not self.delete_roles:
            return

        source_names = {r.name for r in incoming}
        for t in mirrorable:
            if t.id in claimed or t.name in source_names:
                continue
            if self.protection.is_protected(t.name, t.id):
                continue
            try:
                await target_conn.delete_role(t.id)
            except NotFound:
                pass
            except MirrorError as e:
                report.error(f"delete role {t.name}", e)
                continue
            mapping = self.store.by_mirror_id(t.id, MappingKind.ROLE)
            if mapping is not None and not mapping.manually_deleted:
                self.store.remove(mapping.source_id, mapping.source_guild_id, MappingKind.ROLE)
            report.roles_deleted += 1
            logger.info("[🗑️] Deleted orphan role %r", t.name)
