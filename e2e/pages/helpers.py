# Loaded into a page with include_js.


def shout(text):
    return text.upper()
