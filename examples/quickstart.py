"""
transcp Quickstart Example
==========================

This example demonstrates the complete transcp workflow:
1. Prepare a labelled calibration set
2. Fit a transductive conformal classifier around a scikit-learn model
3. Make predictions with p-values and prediction sets
4. Evaluate validity and efficiency on test data

NOTE: This example uses synthetic data for demonstration.
Replace with your own data in production.
"""

import pandas as pd
import numpy as np
from sklearn.linear_model import LogisticRegression

from transcp import Pipeline

# Set random seed for reproducibility
np.random.seed(42)

print("="*70)
print("transcp Quickstart Example")
print("="*70)

# ===== 1. Prepare Data =====
print("\n[Step 1] Generating synthetic customer data...")
print("(In production, load your own CSV files here)\n")


def generate_customer_data(n_customers):
    """Generate synthetic customer data with churn labels."""
    data = {
        'recency': np.random.exponential(scale=30, size=n_customers),
        'frequency': np.random.poisson(lam=5, size=n_customers),
        'tenure': np.random.uniform(1, 36, size=n_customers),
    }

    # Higher recency/lower frequency → more churn
    logit = (
        -1.0
        + 0.04 * data['recency']
        - 0.3 * data['frequency']
        - 0.02 * data['tenure']
    )
    data['churned'] = (1 / (1 + np.exp(-logit)) > np.random.rand(n_customers)).astype(int)

    return pd.DataFrame(data)


calibration = generate_customer_data(200)
print(f"Calibration set: {len(calibration)} customers, "
      f"{calibration['churned'].mean():.1%} churn rate")


# ===== 2. Create and Fit Pipeline =====
print("\n" + "="*70)
print("[Step 2] Fitting transcp Pipeline")
print("="*70)
print("\nEvery prediction refits the classifier once per label,")
print("so batches are spread over a worker pool.\n")

pipeline = Pipeline(
    LogisticRegression(max_iter=1000),
    nc_type='hinge',          # 1 - P(y|x)
    significance=0.10,        # Expected error rate at most 10%
    label_conditional=False,  # True for per-class validity
    random_seed=42
)

pipeline.fit(
    calibration.drop('churned', axis=1),
    calibration['churned']
)


# ===== 3. Make Predictions =====
print("\n" + "="*70)
print("[Step 3] Making Predictions on New Customers")
print("="*70 + "\n")

new_customers = generate_customer_data(15).drop('churned', axis=1)
predictions = pipeline.predict(new_customers)

print("Predictions with p-values:\n")
print(predictions.to_string(index=False))

# Interpret results
print("\n" + "-"*70)
print("Interpretation:")
print("-"*70)
certain_no_churn = (predictions['prediction_set'] == '[0.0]').sum()
certain_churn = (predictions['prediction_set'] == '[1.0]').sum()
uncertain = (predictions['set_size'] == 2).sum()
empty = (predictions['set_size'] == 0).sum()

print(f"\n  ✓ {certain_no_churn} customers: Certain NO churn (low priority)")
print(f"  ⚠ {certain_churn} customers: Certain CHURN (high priority - intervene!)")
print(f"  ? {uncertain} customers: Uncertain (moderate priority)")
print(f"  ∅ {empty} customers: Atypical for both labels (review manually)")


# ===== 4. Evaluate on Test Data =====
print("\n" + "="*70)
print("[Step 4] Evaluating on Test Data")
print("="*70 + "\n")

test_data = generate_customer_data(100)
report = pipeline.evaluate(test_data.drop('churned', axis=1), test_data['churned'])

print("\nSet size breakdown:")
print(report.set_size_table().to_string(index=False))


# ===== 5. Save Pipeline =====
print("\n" + "="*70)
print("[Step 5] Saving Fitted Pipeline")
print("="*70 + "\n")

pipeline.save('transcp_pipeline.pkl')
print("\nTo load later:")
print("  from transcp import Pipeline")
print("  pipeline = Pipeline.load('transcp_pipeline.pkl')")


# ===== Summary =====
print("\n" + "="*70)
print("✅ Quickstart Complete!")
print("="*70 + "\n")
