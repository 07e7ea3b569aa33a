from .health import health_bp
from .turfs import turf_bp
from .slots import slots_bp
from .booking import booking_bp
from .payments import payments_bp
