from django.urls import path
from . import views

urlpatterns = [
    path('create-payment-intent/', views.create_payment_intent, name='create-payment-intent'),
    path('confirm-payment/', views.confirm_payment, name='confirm-payment'),
    path('<str:payment_intent_id>/confirm/', views.confirm_payment, name='confirm-payment-by-id'),
    path('test-keys/', views.stripe_key_status, name='payment-test-keys'),
]
