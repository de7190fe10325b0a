from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("initiate/", views.initiate_payment_view, name="initiate"),
    path("verify/", views.verify_payment_view, name="verify"),
    # gateway redirects the browser here; our id sits in the path since the
    # gateway appends its own ``transaction_id`` query parameter
    path("callback/<str:transaction_id>/", views.payment_callback_view, name="callback"),
    path("callback/", views.payment_callback_view, name="callback_query"),
]
