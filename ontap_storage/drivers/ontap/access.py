"""Convergence of appliance access control with the desired node set.

NAS access is granted through a per-backend export policy whose rules are the
published nodes' IPs; SAN access through initiator group membership. Both
reconcilers compare the desired set with the appliance's current state and
only create or delete the difference, so they can be rerun after any partial
failure. Calls for the same policy or igroup name are serialised with an
oslo.concurrency lock.
"""

from typing import Dict, Iterable, List

from oslo_concurrency import lockutils
from oslo_log import log as logging

from . import exceptions
from . import utils
from .exceptions import ErrorCode

LOG = logging.getLogger(__name__)

EXPORT_POLICY_PREFIX = "ontapstorage-"
LOCK_FILE_PREFIX = "ontap-storage-"

EXPORT_RULE_PROTOCOLS = ["nfs"]
EXPORT_RULE_ACCESS = ["any"]

IGROUP_TYPE = "iscsi"
IGROUP_OS_TYPE = "linux"


def _reconcile_lock(name, config=None):
    external = bool(config is not None and config.external_locks)
    return lockutils.lock(name, lock_file_prefix=LOCK_FILE_PREFIX, external=external)


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


def get_export_policy_name(backend_uuid: str) -> str:
    return EXPORT_POLICY_PREFIX + backend_uuid


def export_policy_exists(policy_name: str, client) -> bool:
    """Return whether the export policy object exists.

    Raises:
        ExportPolicyError: If the lookup itself failed
    """
    try:
        client.export_policy_get(policy_name)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.NOT_FOUND):
            return False
        raise exceptions.ExportPolicyError(
            policy_name=policy_name, details="error getting export policy: %s" % err
        ) from err
    return True


def ensure_export_policy_exists(policy_name: str, client) -> None:
    try:
        client.export_policy_create(policy_name)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.ALREADY_EXISTS):
            LOG.debug("Export policy %s already exists.", policy_name)
            return
        LOG.error("Error creating export policy %s: %s", policy_name, err)
        raise exceptions.ExportPolicyError(
            policy_name=policy_name, details="error creating export policy: %s" % err
        ) from err
    LOG.info("Created export policy %s.", policy_name)


def delete_export_policy(policy_name: str, client) -> None:
    try:
        client.export_policy_destroy(policy_name)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.NOT_FOUND):
            LOG.debug("Export policy %s already deleted.", policy_name)
            return
        raise exceptions.ExportPolicyError(
            policy_name=policy_name, details="error deleting export policy: %s" % err
        ) from err
    LOG.info("Deleted export policy %s.", policy_name)


def reconcile_export_policy_rules(policy_name: str, desired_rules: Iterable[str], client, config=None) -> None:
    """Converge the rules of an export policy onto ``desired_rules``.

    Missing rules are created before stale ones are deleted so a node moving
    between addresses never loses access in between. Rules present in both
    sets are left untouched and keep their index. The first failing call
    aborts the reconciliation; rerunning it resumes from the appliance state.

    Args:
        policy_name: Export policy name
        desired_rules: Client-match strings (IP lists or CIDRs)
        client: OntapClient
        config: Driver config, selects inter-process locking

    Raises:
        ExportPolicyError: If any appliance call fails
    """
    desired = _unique(desired_rules)

    with _reconcile_lock("export-policy-%s" % policy_name, config):
        ensure_export_policy_exists(policy_name, client)

        try:
            rules = client.export_rule_list(policy_name)
        except exceptions.OntapAPIError as err:
            raise exceptions.ExportPolicyError(
                policy_name=policy_name, details="error listing export rules: %s" % err
            ) from err

        current: Dict[str, int] = {rule.client_match: rule.rule_index for rule in rules}

        to_add = [rule for rule in desired if rule not in current]
        to_remove = {match: index for match, index in current.items() if match not in desired}

        for rule in to_add:
            try:
                client.export_rule_create(
                    policy_name,
                    rule,
                    EXPORT_RULE_PROTOCOLS,
                    EXPORT_RULE_ACCESS,
                    EXPORT_RULE_ACCESS,
                    EXPORT_RULE_ACCESS,
                )
            except exceptions.OntapAPIError as err:
                LOG.error("Error creating export rule %s in policy %s: %s", rule, policy_name, err)
                raise exceptions.ExportPolicyError(
                    policy_name=policy_name,
                    details="error creating export rule %s: %s" % (rule, err),
                ) from err
            LOG.info("Added export rule %s to policy %s.", rule, policy_name)

        for rule, index in to_remove.items():
            try:
                client.export_rule_destroy(policy_name, index)
            except exceptions.OntapAPIError as err:
                LOG.error("Error deleting export rule %s from policy %s: %s", rule, policy_name, err)
                raise exceptions.ExportPolicyError(
                    policy_name=policy_name,
                    details="error deleting export rule %s: %s" % (rule, err),
                ) from err
            LOG.info("Removed export rule %s (index %s) from policy %s.", rule, index, policy_name)


def reconcile_igroup(igroup_name: str, desired_iqns: Iterable[str], client, config=None) -> None:
    """Converge initiator group membership onto ``desired_iqns``.

    "Already a member" and "not a member" answers count as success.

    Raises:
        InitiatorGroupError: If any appliance call fails
    """
    desired = _unique(desired_iqns)

    with _reconcile_lock("igroup-%s" % igroup_name, config):
        ensure_igroup_exists(igroup_name, client)

        try:
            igroup = client.igroup_get(igroup_name)
        except exceptions.OntapAPIError as err:
            raise exceptions.InitiatorGroupError(
                igroup_name=igroup_name, details="error reading igroup: %s" % err
            ) from err

        current = set(igroup.initiators)
        to_add = [iqn for iqn in desired if iqn not in current]
        to_remove = sorted(current.difference(desired))

        for iqn in to_add:
            try:
                client.igroup_add(igroup_name, iqn)
            except exceptions.OntapAPIError as err:
                if not err.is_code(ErrorCode.INITIATOR_ALREADY_PRESENT):
                    raise exceptions.InitiatorGroupError(
                        igroup_name=igroup_name,
                        details="error adding initiator %s: %s" % (iqn, err),
                    ) from err
                LOG.debug("Initiator %s already in igroup %s.", iqn, igroup_name)
            else:
                LOG.info("Added initiator %s to igroup %s.", iqn, igroup_name)

        for iqn in to_remove:
            try:
                client.igroup_remove(igroup_name, iqn, True)
            except exceptions.OntapAPIError as err:
                if not err.is_code(ErrorCode.INITIATOR_NOT_PRESENT):
                    raise exceptions.InitiatorGroupError(
                        igroup_name=igroup_name,
                        details="error removing initiator %s: %s" % (iqn, err),
                    ) from err
                LOG.debug("Initiator %s not in igroup %s.", iqn, igroup_name)
            else:
                LOG.info("Removed initiator %s from igroup %s.", iqn, igroup_name)


def ensure_igroup_exists(igroup_name: str, client) -> None:
    try:
        client.igroup_create(igroup_name, IGROUP_TYPE, IGROUP_OS_TYPE)
    except exceptions.OntapAPIError as err:
        if err.is_code(ErrorCode.ALREADY_EXISTS):
            LOG.debug("Igroup %s already exists.", igroup_name)
            return
        raise exceptions.InitiatorGroupError(
            igroup_name=igroup_name, details="error creating igroup: %s" % err
        ) from err
    LOG.info("Created igroup %s.", igroup_name)


def get_desired_export_policy_rules(nodes, config) -> List[str]:
    """One rule per node: its IPs inside autoExportCIDRs, comma-joined.

    Nodes left without any address are skipped.
    """
    rules = []
    for node in nodes:
        try:
            ips = utils.filter_ips_by_cidrs(node.ips, config.auto_export_cidrs)
        except ValueError as err:
            raise exceptions.InvalidConfiguration(
                details="invalid autoExportCIDRs: %s" % err
            ) from err
        if ips:
            rules.append(",".join(ips))
        else:
            LOG.debug("Node %s has no IP in %s, skipping.", node.name, config.auto_export_cidrs)
    return rules


def reconcile_nas_node_access(nodes, config, client, policy_name: str) -> None:
    """Converge the backend export policy onto the given nodes.

    Does nothing unless the backend manages its export policy.
    """
    if not config.auto_export_policy:
        return
    desired_rules = get_desired_export_policy_rules(nodes, config)
    reconcile_export_policy_rules(policy_name, desired_rules, client, config)


def ensure_node_access(publish_info, client, config) -> None:
    """Recreate the backend export policy if it vanished.

    Only the policy object's existence is checked; rule drift is left to
    backend-level reconciliation.
    """
    policy_name = get_export_policy_name(publish_info.backend_uuid)
    if export_policy_exists(policy_name, client):
        LOG.debug("Export policy %s exists.", policy_name)
        return
    LOG.debug("Export policy %s missing, will create it.", policy_name)
    reconcile_nas_node_access(publish_info.nodes, config, client, policy_name)


def publish_flexvol_share(client, config, publish_info, volume_name: str) -> None:
    """Attach the backend export policy to a volume being published."""
    if not config.auto_export_policy or publish_info.unmanaged:
        return

    ensure_node_access(publish_info, client, config)

    policy_name = get_export_policy_name(publish_info.backend_uuid)
    try:
        client.volume_modify_export_policy(volume_name, policy_name)
    except exceptions.OntapAPIError as err:
        LOG.error("Error updating export policy on volume %s: %s", volume_name, err)
        raise exceptions.ExportPolicyError(
            policy_name=policy_name,
            details="error setting export policy on volume %s: %s" % (volume_name, err),
        ) from err
