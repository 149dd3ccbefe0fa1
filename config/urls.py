"""
Main URL Configuration
"""

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    # Admin
    path('admin/', admin.site.urls),

    # Apps
    path('wallet/', include('apps.wallet.urls')),
]

# Admin site customization
admin.site.site_header = "TollPay Vehicle Unit"
admin.site.site_title = "TollPay Unit Portal"
admin.site.index_title = "Offline queue and pending deductions"
