from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

# Jinja2 templates
env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "txt"]),
)


def render_car_contract(contract, car, owner, technician, owner_license, technician_license, license_plate,
                        signed_on):
    template = env.get_template("car_contract.html")
    return template.render(
        contract=contract,
        car=car,
        owner=owner,
        technician=technician,
        owner_license=owner_license,
        technician_license=technician_license,
        license_plate=license_plate,
        signed_on=signed_on,
    )


def render_booking_contract(booking, car, driver, owner):
    template = env.get_template("booking_contract.html")
    return template.render(booking=booking, car=car, driver=driver, owner=owner)
