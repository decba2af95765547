# Flash sale reservation and settlement service
from .config import Settings, get_settings
from .container import FlashSaleContainer
from .errors import FlashSaleError
from .events import ReservationEvent
