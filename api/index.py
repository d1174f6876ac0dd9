from mangum import Mangum

from zknon.api import app
from zknon.config import configure_logging

configure_logging(app.state.settings.log_level)

# Lambda freezes the event loop between invocations, so a payout left in a
# background task would stall and later time out. Settle inside the request
# instead, and skip the lifespan: Mangum runs it around every invocation.
app.state.service.withdrawals.settle_inline = True

handler = Mangum(app, lifespan="off")
