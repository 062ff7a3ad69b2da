# Valet Parking: Database Models
# Import all models here for SQLAlchemy discovery

from app.models.vehicle import VehicleRecord                  # noqa
from app.models.valet import ValetRecord                      # noqa
from app.models.parking_zone import ParkingZoneRecord         # noqa
from app.models.markout_request import MarkOutRequestRecord   # noqa
from app.models.state_transition import StateTransition       # noqa
