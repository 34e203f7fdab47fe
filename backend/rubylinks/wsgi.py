"""
WSGI config for rubylinks project.
"""
import os
from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'rubylinks.settings')
application = get_wsgi_application()
