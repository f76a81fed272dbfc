# Import all ORM models here so Alembic's env.py picks up their metadata automatically.
from homeenergy.models.consumption import DEVICE_FK_NAME, HourlyConsumption
from homeenergy.models.device import PLACEHOLDER_DEVICE_NAME, Device

__all__ = ["Device", "HourlyConsumption", "DEVICE_FK_NAME", "PLACEHOLDER_DEVICE_NAME"]
