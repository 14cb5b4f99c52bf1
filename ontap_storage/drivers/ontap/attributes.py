"""Storage pool capability offers, volume requests and matching."""

from typing import Any, Dict, Optional

from oslo_log import log as logging

LOG = logging.getLogger(__name__)

# Capability names
BACKEND_TYPE = "backendType"
SNAPSHOTS = "snapshots"
CLONES = "clones"
ENCRYPTION = "encryption"
PROVISIONING_TYPE = "provisioningType"
MEDIA = "media"
REGION = "region"
ZONE = "zone"
LABELS = "labels"
SELECTOR = "selector"

# Media types
HDD = "hdd"
HYBRID = "hybrid"
SSD = "ssd"
MEDIA_TYPES = (HDD, HYBRID, SSD)


class Offer:
    """A capability a pool offers."""

    def matches(self, request: "Request") -> bool:
        raise NotImplementedError()

    def to_string(self) -> str:
        raise NotImplementedError()


class StringOffer(Offer):
    def __init__(self, *values: str):
        self.values = list(dict.fromkeys(values))

    @classmethod
    def from_offers(cls, *offers: "StringOffer") -> "StringOffer":
        values = []
        for offer in offers:
            values.extend(offer.values)
        return cls(*values)

    def matches(self, request):
        if not isinstance(request, StringRequest):
            return False
        return request.value in self.values

    def to_string(self):
        return ",".join(self.values)

    def __repr__(self):
        return "StringOffer(%s)" % self.to_string()


class BoolOffer(Offer):
    """A pool offering True satisfies both True and False requests."""

    def __init__(self, value: bool):
        self.value = value

    def matches(self, request):
        if not isinstance(request, BoolRequest):
            return False
        return self.value or not request.value

    def to_string(self):
        return str(self.value).lower()

    def __repr__(self):
        return "BoolOffer(%s)" % self.to_string()


class LabelOffer(Offer):
    """Backend labels overlaid with pool labels."""

    def __init__(self, *label_maps: Optional[Dict[str, str]]):
        self.labels: Dict[str, str] = {}
        for labels in label_maps:
            self.labels.update(labels or {})

    def matches(self, request):
        if not isinstance(request, LabelSelectorRequest):
            return False
        return all(self.labels.get(key) == value for key, value in request.value.items())

    def to_string(self):
        return ",".join("%s=%s" % (k, v) for k, v in sorted(self.labels.items()))

    def __repr__(self):
        return "LabelOffer(%s)" % self.to_string()


class Request:
    def __init__(self, value: Any):
        self.value = value

    def __repr__(self):
        return "%s(%r)" % (self.__class__.__name__, self.value)


class StringRequest(Request):
    pass


class BoolRequest(Request):
    pass


class LabelSelectorRequest(Request):
    """Selector of the form ``key=value;key=value``."""

    def __init__(self, value):
        if isinstance(value, str):
            parsed = {}
            for term in value.split(";"):
                term = term.strip()
                if not term:
                    continue
                key, _, val = term.partition("=")
                parsed[key.strip()] = val.strip()
            value = parsed
        super(LabelSelectorRequest, self).__init__(value)


_REQUEST_TYPES = {
    BACKEND_TYPE: StringRequest,
    SNAPSHOTS: BoolRequest,
    CLONES: BoolRequest,
    ENCRYPTION: BoolRequest,
    PROVISIONING_TYPE: StringRequest,
    MEDIA: StringRequest,
    REGION: StringRequest,
    ZONE: StringRequest,
    SELECTOR: LabelSelectorRequest,
}

# Requests answered by an offer stored under another name
_OFFER_NAMES = {SELECTOR: LABELS}


def create_request(name: str, value: Any) -> Request:
    """Build a typed request for a capability name."""
    request_type = _REQUEST_TYPES.get(name)
    if request_type is None:
        raise ValueError("unknown storage attribute: %s" % name)
    return request_type(value)


class StorageClass:
    """A set of attribute requests a pool must satisfy."""

    def __init__(self, attributes: Dict[str, Request]):
        self.attributes = dict(attributes)

    @classmethod
    def from_attributes(cls, attributes: Dict[str, Request]) -> "StorageClass":
        return cls(attributes)

    def matches(self, pool) -> bool:
        for name, request in self.attributes.items():
            offer = pool.attributes.get(_OFFER_NAMES.get(name, name))
            if offer is None:
                LOG.debug("Pool %s does not offer %s.", pool.name, name)
                return False
            if not offer.matches(request):
                LOG.debug("Pool %s offer %s does not satisfy %s.", pool.name, offer, request)
                return False
        return True

