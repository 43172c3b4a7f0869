"""Campaign admission: city catalog, slot accounting and the registration flow."""
from campaign.cities import CityCatalog, CampaignCity, normalize_city
from campaign.capacity import CapacityTracker
from campaign.registration import RegistrationService

__all__ = [
    "CityCatalog", "CampaignCity", "normalize_city",
    "CapacityTracker", "RegistrationService",
]
