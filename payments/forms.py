from django import forms

from .models import Transaction


class InitiatePaymentForm(forms.Form):
    """Fields a client sends to start paying for a purchasable."""

    purchaser_id = forms.IntegerField(min_value=1)
    purchasable_id = forms.IntegerField(min_value=1)
    amount = forms.DecimalField(max_digits=12, decimal_places=2)
    method = forms.ChoiceField(choices=Transaction.METHOD_CHOICES, required=False)

    def clean_amount(self):
        amount = self.cleaned_data["amount"]
        if amount <= 0:
            raise forms.ValidationError("Amount must be greater than zero.")
        return amount

    def clean_method(self):
        return self.cleaned_data.get("method") or Transaction.METHOD_KHALTI


class VerifyPaymentForm(forms.Form):
    transaction_id = forms.CharField(max_length=64)
    status = forms.CharField(max_length=64)
