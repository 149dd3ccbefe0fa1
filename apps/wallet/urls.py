"""
Wallet URL Configuration
"""

from django.urls import path
from . import views

app_name = 'wallet'

urlpatterns = [
    path('', views.wallet_summary, name='wallet_summary'),
    path('top-up/', views.top_up, name='top_up'),
    path('history/', views.history, name='history'),
]
