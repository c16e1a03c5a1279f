# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Works out what privilege a template needs before anything runs."""

import logging
from typing import List, Optional

from melody.core.models import PrivilegeRequirement, RequirementReason
from melody.core.paths import RegistryPath
from melody.core.privilege import PrivilegeContext, resolve_context
from melody.core.template import Template

logger = logging.getLogger("melody.analyzer")

MACHINE_HIVE = "machine-hive"
FEATURE_INSTALL = "feature-install"


def analyze(template: Template, context: Optional[PrivilegeContext] = None) -> PrivilegeRequirement:
    """
    Aggregate the privilege requirement of a template.

    Machine-wide registry paths and declared feature/capability installs need
    admin. User-hive and file items never do. Elevation is needed when admin
    is needed and the context is not already elevated.
    """
    reasons: List[RequirementReason] = []

    for item in template.registry:
        path = item.config_path
        if isinstance(path, RegistryPath) and path.hive.machine_wide:
            reasons.append(RequirementReason(target=str(path), tag=MACHINE_HIVE, item=item.name, path=path))

    for feature in template.features:
        if feature.requires_admin:
            reasons.append(RequirementReason(target=feature.name, tag=FEATURE_INSTALL, item=feature.name))

    # Common case: nothing privileged, no need to look at the token
    if not reasons:
        return PrivilegeRequirement.unprivileged()

    context = resolve_context(context)
    requirement = PrivilegeRequirement(
        requires_admin=True,
        requires_elevation=not context.elevated,
        reasons=tuple(reasons),
    )

    logger.info(
        f"Template '{template.name}' needs admin for {len(reasons)} item(s); "
        f"elevation {'required' if requirement.requires_elevation else 'not required'}"
    )
    return requirement
