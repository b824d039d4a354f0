from django.urls import path
from . import views

urlpatterns = [
    path('my-orders/', views.my_orders, name='my-orders'),
    path('<uuid:order_id>/', views.order_detail, name='order-detail'),
]
