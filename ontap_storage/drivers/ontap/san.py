"""iSCSI setup and LUN publish for the SAN driver variants."""

import ipaddress
from typing import Callable, List, Optional, Tuple

from oslo_log import log as logging

from . import access
from . import chap
from . import exceptions
from .exceptions import ErrorCode

LOG = logging.getLogger(__name__)

LUN_ATTRIBUTE_FSTYPE = "com.ontapstorage.fstype"


def validate_san_driver(config, ips: List[str]) -> List[str]:
    """Check the configured data LIF against the SVM's iSCSI addresses.

    Returns:
        The addresses to publish; only the data LIF when one is configured

    Raises:
        InvalidConfiguration: If the data LIF is not a valid, discovered IP
    """
    if not config.data_lif:
        return list(ips)

    try:
        ipaddress.ip_address(config.data_lif)
    except ValueError as err:
        raise exceptions.InvalidConfiguration(
            details="data LIF is not a valid IP: %s" % config.data_lif
        ) from err

    if config.data_lif not in ips:
        raise exceptions.InvalidConfiguration(
            details="could not find data LIF %s" % config.data_lif
        )
    LOG.debug("Found matching data LIF %s, using it exclusively.", config.data_lif)
    return [config.data_lif]


def initialize_san_driver(client, config, validate: Optional[Callable[[], None]] = None) -> None:
    """Prepare the SVM for publishing LUNs.

    Args:
        client: OntapClient
        config: Driver config with defaults populated
        validate: Driver-specific validation run before any change is made

    Raises:
        ChapError: If the default initiator's auth type conflicts with the
            CHAP setting
        SANError: If the appliance could not be read or updated
    """
    if validate is not None:
        validate()

    access.ensure_igroup_exists(config.igroup_name, client)

    try:
        default_auth = client.iscsi_initiator_get_default_auth()
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(
            details="error checking default initiator's auth type: %s" % err
        ) from err

    auth_type = chap.get_default_auth_type(default_auth)

    if not config.use_chap:
        if auth_type is not chap.AuthType.NONE:
            raise exceptions.ChapError(details="default initiator's auth type is not 'none'")
        return

    try:
        credentials = chap.validate_bidirectional_chap_credentials(default_auth, config)
    except exceptions.ChapError as err:
        raise exceptions.ChapError(details="error with CHAP credentials: %s" % err) from err
    LOG.debug("Using CHAP credentials for SVM %s.", client.svm)

    if auth_type is chap.AuthType.NONE:
        try:
            luns = client.lun_list_for_vserver()
        except exceptions.OntapAPIError as err:
            raise exceptions.SANError(details="error listing LUNs: %s" % err) from err
        if luns:
            raise exceptions.ChapError(
                details=(
                    "will not enable CHAP for SVM %s; %d existing LUNs would lose access"
                    % (client.svm, len(luns))
                )
            )

    try:
        client.iscsi_initiator_set_default_auth(
            chap.AuthType.CHAP.value,
            credentials.chap_username,
            credentials.chap_initiator_secret,
            credentials.chap_target_username,
            credentials.chap_target_initiator_secret,
        )
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(
            details="error setting CHAP credentials: %s" % err
        ) from err
    LOG.info("Enabled CHAP on the default initiator of SVM %s.", client.svm)


def get_iscsi_target_info(client, config) -> Tuple[str, List[str]]:
    """Return the SVM's iSCSI node name and enabled ``ip:port`` interfaces.

    Raises:
        SANError: If the lookups fail or no interface is enabled
    """
    try:
        node_name = client.iscsi_node_get_name()
        interfaces = client.iscsi_interface_list()
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(details="could not get SVM iSCSI target info: %s" % err) from err

    portals = [
        "%s:%d" % (interface.ip_address, interface.ip_port)
        for interface in interfaces
        if interface.enabled
    ]
    if not portals:
        raise exceptions.SANError(
            details="SAN driver has no iSCSI interfaces on SVM %s" % config.svm
        )
    return node_name, portals


def _get_data_lifs_for_reporting_nodes(client, ips: List[str], lun_path: str, igroup_name: str) -> List[str]:
    try:
        lun_maps = client.lun_map_get(igroup_name, lun_path)
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(
            details="could not get LUN map for %s: %s" % (lun_path, err)
        ) from err

    reporting_nodes = set()
    for lun_map in lun_maps:
        reporting_nodes.update(lun_map.reporting_nodes)

    reported = []
    for ip in ips:
        try:
            node = client.net_interface_get_data_lif_node(ip)
        except exceptions.OntapAPIError as err:
            raise exceptions.SANError(
                details="could not get node of data LIF %s: %s" % (ip, err)
            ) from err
        if node in reporting_nodes:
            reported.append(ip)
    return reported


def _get_portal_ips(client, ips: List[str], lun_path: str, igroup_name: str) -> List[str]:
    filtered_ips = _get_data_lifs_for_reporting_nodes(client, ips, lun_path, igroup_name)
    if not filtered_ips:
        LOG.warning("Unable to find reporting ONTAP nodes for discovered data LIFs.")
        filtered_ips = list(ips)
    if not filtered_ips:
        raise exceptions.SANError(details="no data LIFs to publish LUN %s on" % lun_path)
    return filtered_ips


def populate_ontap_lun_mapping(client, config, ips: List[str], vol_config, lun_id: int, lun_path: str, igroup_name: str) -> None:
    """Record where a newly created or imported LUN can be reached.

    Fills ``vol_config.access_info`` from the SVM's target IQN and the data
    LIFs on the nodes reporting the LUN.

    Raises:
        SANError: If the target IQN or the LUN map could not be read
    """
    try:
        target_iqn = client.iscsi_node_get_name()
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(details="problem retrieving iSCSI services: %s" % err) from err
    LOG.debug("Discovered target IQN %s for volume %s.", target_iqn, vol_config.name)

    filtered_ips = _get_portal_ips(client, ips, lun_path, igroup_name)

    access_info = vol_config.access_info
    access_info.iscsi_target_portal = filtered_ips[0]
    access_info.iscsi_portals = filtered_ips[1:]
    access_info.iscsi_target_iqn = target_iqn
    access_info.iscsi_lun_number = lun_id
    access_info.iscsi_igroup = config.igroup_name
    LOG.debug(
        "Mapped ONTAP LUN %s (LUN %d, igroup %s) for volume %s.",
        lun_path,
        lun_id,
        access_info.iscsi_igroup,
        vol_config.internal_name,
    )


def publish_lun(client, config, ips: List[str], publish_info, lun_path: str, igroup_name: str, iscsi_node_name: str) -> None:
    """Grant a host access to a LUN and fill in the iSCSI publish info.

    Args:
        client: OntapClient
        config: Driver config
        ips: Data LIF addresses to offer as portals
        publish_info: VolumePublishInfo, updated in place
        lun_path: Path of the LUN to map
        igroup_name: Initiator group the host is added to
        iscsi_node_name: Target IQN of the SVM

    Raises:
        SANError: If the host IQN is unknown or an appliance call fails
    """
    iqn = publish_info.host_iqn[0] if publish_info.host_iqn else ""
    if not iqn:
        raise exceptions.SANError(details="host IQN not found")

    fstype = config.file_system_type
    try:
        value = client.lun_get_attribute(lun_path, LUN_ATTRIBUTE_FSTYPE)
    except exceptions.OntapAPIError as err:
        LOG.warning("LUN attribute fstype not found for %s, using default %s: %s", lun_path, fstype, err)
    else:
        if value:
            fstype = value
            LOG.debug("Found LUN attribute fstype %s for %s.", fstype, lun_path)

    if not publish_info.unmanaged:
        try:
            client.igroup_add(igroup_name, iqn)
        except exceptions.OntapAPIError as err:
            if not err.is_code(ErrorCode.INITIATOR_ALREADY_PRESENT):
                raise exceptions.InitiatorGroupError(
                    igroup_name=igroup_name,
                    details="error adding IQN %s: %s" % (iqn, err),
                ) from err
            LOG.debug("Host IQN %s already in igroup %s.", iqn, igroup_name)

    try:
        lun_id = client.lun_map_if_not_mapped(igroup_name, lun_path, publish_info.unmanaged)
    except exceptions.OntapAPIError as err:
        raise exceptions.SANError(
            details="error mapping LUN %s to igroup %s: %s" % (lun_path, igroup_name, err)
        ) from err

    filtered_ips = _get_portal_ips(client, ips, lun_path, igroup_name)

    publish_info.iscsi_lun_number = lun_id
    publish_info.iscsi_target_portal = filtered_ips[0]
    publish_info.iscsi_portals = filtered_ips[1:]
    publish_info.iscsi_target_iqn = iscsi_node_name
    publish_info.iscsi_igroup = igroup_name
    publish_info.filesystem_type = fstype
    publish_info.use_chap = config.use_chap
    publish_info.chap_credentials = chap.credentials_from_config(config) if config.use_chap else None
    publish_info.shared_target = True
