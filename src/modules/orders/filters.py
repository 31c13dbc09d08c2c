import django_filters

from modules.orders.constants import OrderFamily
from modules.orders.models import Order


class OrderFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    family = django_filters.ChoiceFilter(choices=OrderFamily.choices)
    retailer = django_filters.CharFilter(field_name="retailer_id")
    wholesaler = django_filters.CharFilter(field_name="wholesaler_id")
    supplier = django_filters.CharFilter(field_name="supplier_id")
    transporter = django_filters.CharFilter(field_name="transporter_id")
    start_date = django_filters.DateFilter(field_name="created_at", lookup_expr="date__gte")
    end_date = django_filters.DateFilter(field_name="created_at", lookup_expr="date__lte")
    min_total = django_filters.NumberFilter(
        field_name="total_amount", lookup_expr="gte"
    )
    max_total = django_filters.NumberFilter(
        field_name="total_amount", lookup_expr="lte"
    )

    class Meta:
        model = Order
        fields = [
            "status",
            "family",
            "retailer",
            "wholesaler",
            "supplier",
            "transporter",
            "start_date",
            "end_date",
            "min_total",
            "max_total",
        ]
