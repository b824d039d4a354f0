from django.urls import path
from . import views

urlpatterns = [
    path('', views.coupon_list, name='coupon-list'),
    path('validate/<str:code>/', views.validate, name='coupon-validate'),
    path('<int:coupon_id>/', views.coupon_detail, name='coupon-detail'),
    path('<int:coupon_id>/use/', views.use, name='coupon-use'),
]
