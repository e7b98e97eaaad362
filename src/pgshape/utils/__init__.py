from ._logging import (
    log as log,
)
from ._logging import (
    log_step as log_step,
)
from ._logging import (
    logger as logger,
)
from ._logging import (
    set_log_level as set_log_level,
)
from .simulation import generate_toy_shapes as generate_toy_shapes
