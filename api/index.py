from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loyalty.api import app

# Serverless deployments serve the API under /api.
app.root_path = "/api"

handler = Mangum(app)
