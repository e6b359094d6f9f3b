"""Centralised selectors for the partner booking portal."""

# ==== LOGIN ====
USERNAME_INPUT = "input[name='username']"
PASSWORD_INPUT = "input[name='password']"
LOGIN_SUBMIT = "button[type='submit']"

# ==== SEARCH FORM ====
# Rendered only for authenticated users; doubles as the post-login marker.
DESTINATION_INPUT = "input#destination"
DESTINATION_SUGGESTION = ".tt-suggestion"
CHECK_IN_INPUT = "input#fromDatepicker"
CHECK_OUT_INPUT = "input#toDatepicker"
SEARCH_BUTTON = "input#searchButton, button#searchButton"

# ==== RESULTS ====
NAME_FILTER_INPUT = "input#filterHotelByName"
RESULT_ITEM = ".hotel-item, [data-hotel-name]"
RESULT_NAME = ".hotel-name, [data-hotel-name]"
RESULT_PRICE = ".price, [data-price]"
