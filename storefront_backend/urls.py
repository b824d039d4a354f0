from django.urls import include, path

from orders import views as order_views

urlpatterns = [
    path('api/payments/', include('orders.payment_urls')),
    path('api/orders/', include('orders.urls')),
    path('api/admin/orders/', order_views.admin_orders, name='admin-orders'),
    path('api/admin/orders/<uuid:order_id>/', order_views.admin_update_order, name='admin-update-order'),
    path('api/cart/', order_views.my_cart, name='my-cart'),
    path('api/coupons/', include('coupons.urls')),
]
