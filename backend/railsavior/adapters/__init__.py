"""Agency adapter registry."""

from railsavior.adapters.base import AgencyAdapter
from railsavior.adapters.cta import CTAAdapter
from railsavior.adapters.lametro import LAMetroAdapter
from railsavior.adapters.marta import MARTAAdapter
from railsavior.adapters.mbta import MBTAAdapter
from railsavior.adapters.mta import MTAAdapter
from railsavior.adapters.rtd import RTDAdapter
from railsavior.adapters.septa import SEPTAAdapter
from railsavior.adapters.sf511 import SF511Adapter
from railsavior.adapters.wmata import WMATAAdapter
from railsavior.errors import UnknownAgencyError

ADAPTERS: dict[str, AgencyAdapter] = {
    adapter.agency_id: adapter
    for adapter in (
        CTAAdapter(),
        WMATAAdapter(),
        MARTAAdapter(),
        MBTAAdapter(),
        MTAAdapter(),
        RTDAdapter(),
        SEPTAAdapter(),
        LAMetroAdapter(),
        SF511Adapter(),
    )
}


def get_adapter(agency_id: str) -> AgencyAdapter:
    adapter = ADAPTERS.get(agency_id.strip().lower())
    if adapter is None:
        raise UnknownAgencyError(f"Unknown agency '{agency_id}'")
    return adapter


__all__ = ["ADAPTERS", "AgencyAdapter", "get_adapter"]
