"""IAM service account. The task name is the account id."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from ..backend import ResourceRef
from ..context import RunContext
from ..delta import Changes, Differ, case_insensitive
from ..fields import UNSET, Opt, opt
from ..render import CloudAPIRenderer, CloudAPITarget, TerraformRenderer
from ..task import CannotApplyChangesError, Task
from ..terraform import TerraformLiteral, TerraformTarget

logger = logging.getLogger(__name__)


@dataclass
class ServiceAccount(Task, CloudAPIRenderer, TerraformRenderer):
    email: Opt[str] = UNSET
    display_name: Opt[str] = UNSET
    description: Opt[str] = UNSET

    kind: ClassVar[str] = "ServiceAccount"
    computed_fields: ClassVar[frozenset[str]] = frozenset({"email"})
    immutable_fields: ClassVar[frozenset[str]] = frozenset({"email"})

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef("serviceAccounts", self.name)

    async def find(self, ctx: RunContext) -> ServiceAccount | None:
        r = await ctx.find(self.ref)
        if r is None:
            return None

        return ServiceAccount(
            name=r.get("accountId", self.name),
            lifecycle=self.lifecycle,
            email=opt(r.get("email")),
            display_name=opt(r.get("displayName")),
            description=opt(r.get("description")),
        )

    def diff(self, actual: ServiceAccount | None) -> Changes:
        return (
            Differ(self, actual)
            .field("email", case_insensitive)
            .field("display_name")
            .field("description")
            .changes()
        )

    async def render_cloud_api(
        self, t: CloudAPITarget, actual: ServiceAccount | None, changes: Changes
    ) -> None:
        if actual is None:
            body: dict[str, Any] = {"accountId": self.name}
            if self.display_name.has_value:
                body["displayName"] = self.display_name.get()
            if self.description.has_value:
                body["description"] = self.description.get()
            await t.create(self.ref, body)

            created = await t.ctx.find(self.ref)
            if created is not None and created.get("email") and not self.email.has_value:
                self.email = Opt.of(created["email"])
            return

        patch: dict[str, Any] = {}
        for field_name, api_name in (("display_name", "displayName"), ("description", "description")):
            if field_name in changes:
                patch[api_name] = getattr(self, field_name).value_or("")
                changes.discard(field_name)

        if not changes.is_empty:
            raise CannotApplyChangesError(self.key, changes.field_names)
        if patch:
            await t.update(self.ref, {"patch": patch})

    def render_terraform(
        self, t: TerraformTarget, actual: ServiceAccount | None, changes: Changes
    ) -> None:
        t.render_resource(
            "google_service_account",
            self.name,
            {
                "account_id": self.name,
                "display_name": self.display_name.value_or(None),
                "description": self.description.value_or(None),
            },
        )

    def terraform_reference(self, attribute: str) -> TerraformLiteral:
        match attribute:
            case "email" | "name":
                return TerraformLiteral.attribute("google_service_account", self.name, attribute)
            case _:
                return super().terraform_reference(attribute)
