from django.urls import path

from . import views

urlpatterns = [
    path('', views.home, name='home'),
    path('policy-upload/', views.policy_upload_view, name='policy_upload'),
    path('calculator/', views.calculator_view, name='calculator'),
]
