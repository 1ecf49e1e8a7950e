from mangum import Mangum

from earnings.api import app

# serverless entry point; the routes live in earnings.api
app.root_path = "/api"

handler = Mangum(app)
